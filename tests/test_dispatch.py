from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from ccpalette.dispatch import (
    BACKSPACE,
    DOWN,
    ENTER,
    ESCAPE,
    TAB,
    DispatchState,
    DispatchStateMachine,
    normalize_key,
    split_command_line,
)
from ccpalette.registry import CommandRegistry
from ccpalette.schema import CommandDescriptor, CommandSource, Role, SyncSnapshot
from ccpalette.session_view import SessionView
from tests.utils import RecordingExecutor

HELP = CommandDescriptor(name="help", summary="Show help")
HISTORY = CommandDescriptor(name="history", summary="Show history")
MODEL = CommandDescriptor(name="model", summary="Switch model", hint="<name>", accepts_arguments=True)
DEPLOY = CommandDescriptor(
    name="deploy",
    summary="Deploy",
    source=CommandSource.LOCAL_OVERRIDE,
    scope="project",
    file_path="/project/.claude/commands/deploy.md",
    content="Deploy to $ARGUMENTS",
    accepts_arguments=True,
)


class RegistryHolder:
    def __init__(self, *commands: CommandDescriptor) -> None:
        self.registry = CommandRegistry(SyncSnapshot(commands=commands))

    def __call__(self) -> CommandRegistry:
        return self.registry


def _machine(*commands: CommandDescriptor, executor=None) -> tuple[DispatchStateMachine, RecordingExecutor, SessionView]:
    executor = executor or RecordingExecutor()
    view = SessionView()
    holder = RegistryHolder(*(commands or (HELP, HISTORY, MODEL)))
    return DispatchStateMachine(holder, executor, view), executor, view


@pytest.mark.asyncio
async def test_slash_opens_suggestions_and_prefix_narrows() -> None:
    machine, _, _ = _machine()

    assert await machine.handle_keystroke("/") is DispatchState.SUGGESTING
    assert [c.name for c in machine.suggestions.items] == ["help", "history", "model"]

    await machine.feed("he")

    assert machine.buffer == "/he"
    assert [c.name for c in machine.suggestions.items] == ["help"]
    assert machine.suggestions.highlighted == HELP


@pytest.mark.asyncio
async def test_enter_executes_highlighted_command_and_records_turns() -> None:
    machine, executor, view = _machine()
    await machine.feed("/he")

    state = await machine.handle_keystroke(ENTER)

    assert state is DispatchState.IDLE
    assert machine.buffer == ""
    assert executor.calls == [("help", "")]
    assert [(t.role, t.content, t.is_error) for t in view.turns] == [
        (Role.USER, "/help", False),
        (Role.ASSISTANT, "done: /help", False),
    ]


@pytest.mark.asyncio
async def test_unknown_prefix_keeps_previous_list_flagged_no_match() -> None:
    machine, executor, _ = _machine()
    await machine.feed("/he")

    await machine.handle_keystroke("x")

    assert machine.suggestions.no_match is True
    assert [c.name for c in machine.suggestions.items] == ["help"]
    assert machine.suggestions.highlighted is None

    assert await machine.handle_keystroke(ENTER) is DispatchState.SUGGESTING
    assert executor.calls == []

    await machine.handle_keystroke(BACKSPACE)
    assert machine.suggestions.no_match is False
    assert machine.suggestions.highlighted == HELP


@pytest.mark.asyncio
async def test_escape_and_deleting_slash_return_to_idle() -> None:
    machine, _, _ = _machine()
    await machine.feed("/mo")
    assert await machine.handle_keystroke(ESCAPE) is DispatchState.IDLE
    assert machine.buffer == ""

    await machine.handle_keystroke("/")
    assert await machine.handle_keystroke(BACKSPACE) is DispatchState.IDLE
    assert machine.suggestions.items == []


@pytest.mark.asyncio
async def test_tab_completes_and_arguments_are_passed() -> None:
    machine, executor, view = _machine()
    await machine.feed("/mo")

    await machine.handle_keystroke(TAB)
    assert machine.buffer == "/model "

    await machine.feed("opus")
    await machine.handle_keystroke(ENTER)

    assert executor.calls == [("model", "opus")]
    assert view.turns[0].content == "/model opus"


@pytest.mark.asyncio
async def test_arrow_keys_move_highlight() -> None:
    machine, executor, _ = _machine()
    await machine.handle_keystroke("/")

    await machine.handle_keystroke(DOWN)
    assert machine.suggestions.highlighted == HISTORY
    await machine.handle_keystroke("up")
    await machine.handle_keystroke("up")
    assert machine.suggestions.highlighted == MODEL

    await machine.handle_keystroke(ENTER)
    assert executor.calls == [("model", "")]


@pytest.mark.asyncio
async def test_execution_failure_becomes_error_turn() -> None:
    machine, _, view = _machine(executor=RecordingExecutor(fail="rate limited"))
    await machine.feed("/help")

    state = await machine.handle_keystroke(ENTER)

    assert state is DispatchState.IDLE
    error = view.turns[-1]
    assert error.is_error is True
    assert error.role is Role.ASSISTANT
    assert error.content == "/help failed: rate limited"


@pytest.mark.asyncio
async def test_unexpected_executor_error_is_contained() -> None:
    executor = Mock()
    executor.execute = AsyncMock(side_effect=RuntimeError("pipe closed"))
    machine, _, view = _machine(executor=executor)
    await machine.feed("/help")

    assert await machine.handle_keystroke(ENTER) is DispatchState.IDLE

    executor.execute.assert_awaited_once_with("help", "")
    assert view.turns[-1].content == "/help failed: pipe closed"
    assert view.turns[-1].is_error is True


@pytest.mark.asyncio
async def test_keys_during_execution_are_queued_and_replayed() -> None:
    executor = RecordingExecutor()
    executor.release = asyncio.Event()
    machine, _, view = _machine(executor=executor)
    await machine.feed("/help")

    task = asyncio.create_task(machine.handle_keystroke(ENTER))
    for _ in range(5):
        await asyncio.sleep(0)
    assert machine.state is DispatchState.EXECUTING

    await machine.feed("/mo")
    assert machine.pending_keys == ("/", "m", "o")
    assert len(view.turns) == 1

    executor.release.set()
    await task

    assert machine.pending_keys == ()
    assert machine.state is DispatchState.SUGGESTING
    assert machine.buffer == "/mo"
    assert [c.name for c in machine.suggestions.items] == ["model"]
    assert len(view.turns) == 2


@pytest.mark.asyncio
async def test_registry_swap_requeries_with_same_prefix() -> None:
    holder = RegistryHolder(HELP)
    machine = DispatchStateMachine(holder, RecordingExecutor(), SessionView())
    await machine.feed("/mo")
    assert machine.suggestions.no_match is True

    holder.registry = CommandRegistry(SyncSnapshot(commands=(HELP, MODEL)))
    machine.refresh_suggestions()

    assert machine.buffer == "/mo"
    assert machine.suggestions.highlighted == MODEL


@pytest.mark.asyncio
async def test_refresh_outside_suggesting_is_a_no_op() -> None:
    machine, _, _ = _machine()
    machine.refresh_suggestions()

    assert machine.state is DispatchState.IDLE
    assert machine.suggestions.items == []


@pytest.mark.asyncio
async def test_custom_command_is_expanded_into_a_prompt() -> None:
    machine, executor, view = _machine(HELP, DEPLOY)
    await machine.feed("/deploy staging")

    await machine.handle_keystroke(ENTER)

    assert executor.calls == [("", "Deploy to staging")]
    assert view.turns[0].content == "/deploy staging"
    assert view.turns[1].content == "done: Deploy to staging"


@pytest.mark.asyncio
async def test_plain_text_is_sent_as_prompt() -> None:
    machine, executor, view = _machine()

    assert await machine.feed("hi") is DispatchState.TYPING
    await machine.handle_keystroke("\r")

    assert executor.calls == [("", "hi")]
    assert view.turns[0].content == "hi"
    assert machine.state is DispatchState.IDLE


@pytest.mark.asyncio
async def test_typing_escape_and_backspace_to_empty() -> None:
    machine, executor, _ = _machine()
    await machine.feed("ab")
    await machine.handle_keystroke("\x1b")
    assert machine.state is DispatchState.IDLE

    await machine.feed("a")
    await machine.handle_keystroke("\x7f")
    assert machine.state is DispatchState.IDLE
    assert executor.calls == []


def test_normalize_key_and_split_command_line() -> None:
    assert normalize_key("\t") == TAB
    assert normalize_key("Enter") == ENTER
    with pytest.raises(ValueError):
        normalize_key("ctrl-x")
    assert split_command_line("/model  opus 4 ") == ("model", "opus 4")
    assert split_command_line("/") == ("", "")
