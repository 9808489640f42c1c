"""Keystroke-driven state machine for slash-command suggestion and dispatch.

States::

    IDLE --"/"--> SUGGESTING --enter--> EXECUTING --done/failed--> IDLE
    IDLE --text--> TYPING ----enter--> EXECUTING
    SUGGESTING --escape / delete "/"--> IDLE

Keys arriving while a command executes are queued and replayed once it
finishes; a dispatched command is never interrupted.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable

from ccpalette.errors import CommandNotFound, ExecutionFailure
from ccpalette.local_commands import expand_arguments
from ccpalette.log_utils import log_context, log_event
from ccpalette.registry import CommandRegistry
from ccpalette.schema import CommandDescriptor, CommandSource, Role
from ccpalette.session_view import SessionView
from ccpalette.upstream import CommandExecutor

logger = logging.getLogger(__name__)

ENTER = "enter"
BACKSPACE = "backspace"
ESCAPE = "escape"
TAB = "tab"
UP = "up"
DOWN = "down"
NAMED_KEYS = {ENTER, BACKSPACE, ESCAPE, TAB, UP, DOWN}

_CONTROL_ALIASES = {
    "\r": ENTER,
    "\n": ENTER,
    "\x7f": BACKSPACE,
    "\b": BACKSPACE,
    "\x1b": ESCAPE,
    "\t": TAB,
}


class DispatchState(StrEnum):
    IDLE = "idle"
    TYPING = "typing"
    SUGGESTING = "suggesting"
    EXECUTING = "executing"


def normalize_key(key: str) -> str:
    """Map control characters to named keys; any other key must be a single character."""
    if key in _CONTROL_ALIASES:
        return _CONTROL_ALIASES[key]
    lowered = key.lower()
    if lowered in NAMED_KEYS:
        return lowered
    if len(key) != 1:
        raise ValueError(f"unsupported key: {key!r}")
    return key


def split_command_line(buffer: str) -> tuple[str, str]:
    """``"/name rest of line"`` -> ``("name", "rest of line")``."""
    body = buffer[1:] if buffer.startswith("/") else buffer
    name, _, argument = body.partition(" ")
    return name, argument.strip()


@dataclass
class Suggestions:
    items: list[CommandDescriptor] = field(default_factory=list)
    selected: int = 0
    no_match: bool = False

    @property
    def highlighted(self) -> CommandDescriptor | None:
        if self.no_match or not self.items:
            return None
        return self.items[self.selected]


class DispatchStateMachine:
    def __init__(
        self,
        registry: Callable[[], CommandRegistry],
        executor: CommandExecutor,
        view: SessionView,
    ) -> None:
        self._registry = registry
        self.executor = executor
        self.view = view
        self.state = DispatchState.IDLE
        self.buffer = ""
        self.suggestions = Suggestions()
        self._pending: deque[str] = deque()

    @property
    def pending_keys(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def _reset(self) -> None:
        self.state = DispatchState.IDLE
        self.buffer = ""
        self.suggestions = Suggestions()

    async def handle_keystroke(self, key: str) -> DispatchState:
        """Advance the state machine by one key.

        Keys arriving while a command executes are queued and replayed, in
        order, once it finishes.
        """
        key = normalize_key(key)
        if self.state is DispatchState.EXECUTING:
            self._pending.append(key)
            return self.state
        await self._process(key)
        return self.state

    async def feed(self, text: str) -> DispatchState:
        for char in text:
            await self.handle_keystroke(char)
        return self.state

    async def _process(self, key: str) -> None:
        if self.state is DispatchState.IDLE:
            self._on_idle(key)
        elif self.state is DispatchState.TYPING:
            await self._on_typing(key)
        elif self.state is DispatchState.SUGGESTING:
            await self._on_suggesting(key)

    def _on_idle(self, key: str) -> None:
        if key == "/":
            self.buffer = "/"
            self.state = DispatchState.SUGGESTING
            self.suggestions = Suggestions()
            self._requery()
        elif key not in NAMED_KEYS:
            self.buffer = key
            self.state = DispatchState.TYPING

    async def _on_typing(self, key: str) -> None:
        if key == ENTER:
            text = self.buffer.strip()
            if text:
                await self._execute(None, text)
            else:
                self._reset()
        elif key == ESCAPE:
            self._reset()
        elif key == BACKSPACE:
            self.buffer = self.buffer[:-1]
            if not self.buffer:
                self._reset()
        elif key not in NAMED_KEYS:
            self.buffer += key

    async def _on_suggesting(self, key: str) -> None:
        if key == ESCAPE:
            self._reset()
        elif key == BACKSPACE:
            self.buffer = self.buffer[:-1]
            if not self.buffer.startswith("/"):
                self._reset()
            else:
                self._requery()
        elif key == TAB:
            self._complete()
        elif key in (UP, DOWN):
            self._move(-1 if key == UP else 1)
        elif key == ENTER:
            await self._confirm()
        else:
            self.buffer += key
            self._requery()

    def _requery(self) -> None:
        name, _ = split_command_line(self.buffer)
        results = self._registry().prefix_search(name)
        if results:
            previous = self.suggestions.highlighted
            selected = 0
            if previous is not None:
                selected = next((i for i, cmd in enumerate(results) if cmd.name == previous.name), 0)
            self.suggestions = Suggestions(items=results, selected=selected)
        else:
            # Keep the last non-empty list on screen, flagged as "no match".
            self.suggestions = Suggestions(items=self.suggestions.items, selected=0, no_match=True)

    def refresh_suggestions(self) -> None:
        """Re-run the query against the current registry, keeping the typed text."""
        if self.state is DispatchState.SUGGESTING:
            self._requery()

    def _move(self, step: int) -> None:
        items = self.suggestions.items
        if not items or self.suggestions.no_match:
            return
        self.suggestions.selected = (self.suggestions.selected + step) % len(items)

    def _complete(self) -> None:
        target = self.suggestions.highlighted
        if target is None or " " in self.buffer:
            return
        self.buffer = target.full_command + (" " if target.accepts_arguments else "")
        self._requery()

    async def _confirm(self) -> None:
        name, argument = split_command_line(self.buffer)
        try:
            descriptor = self._registry().lookup(name)
        except CommandNotFound:
            descriptor = self.suggestions.highlighted
            if descriptor is None:
                self.suggestions.no_match = True
                log_event(logger, "dispatch.no_match", level=logging.DEBUG, command=name)
                return
        await self._execute(descriptor, argument)

    async def _execute(self, descriptor: CommandDescriptor | None, text: str) -> None:
        self.state = DispatchState.EXECUTING
        self.suggestions = Suggestions()

        if descriptor is None:
            display, call_name, call_argument = text, "", text
        else:
            display = descriptor.full_command + (f" {text}" if text else "")
            call_name, call_argument = descriptor.name, text
            if descriptor.source is CommandSource.LOCAL_OVERRIDE and descriptor.file_path:
                # Custom markdown commands are expanded locally and sent as a prompt.
                call_name, call_argument = "", expand_arguments(descriptor, text)

        self.view.append_text(Role.USER, display)
        with log_context(command=descriptor.name if descriptor else None):
            try:
                reply = await self.executor.execute(call_name, call_argument)
            except ExecutionFailure as exc:
                log_event(logger, "dispatch.failed", level=logging.WARNING, reason=exc.reason)
                self.view.append_text(Role.ASSISTANT, str(exc), is_error=True)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Executor raised unexpectedly")
                name = descriptor.name if descriptor else ""
                self.view.append_text(Role.ASSISTANT, str(ExecutionFailure(name, str(exc))), is_error=True)
            else:
                log_event(logger, "dispatch.completed", chars=len(reply))
                self.view.append_text(Role.ASSISTANT, reply)
            finally:
                self._reset()
        await self._drain_pending()

    async def _drain_pending(self) -> None:
        while self._pending and self.state is not DispatchState.EXECUTING:
            await self._process(self._pending.popleft())
