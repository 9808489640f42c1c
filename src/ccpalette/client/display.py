"""Rich rendering for transcript turns, suggestions and status lines."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ccpalette.dispatch import Suggestions
from ccpalette.registry import CommandRegistry
from ccpalette.schema import CommandSource, ConversationTurn, Role, SyncSnapshot

MAX_SUGGESTIONS = 8

# Render into a buffer and hand the ANSI text to prompt_toolkit so output
# does not corrupt an active prompt.
_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()


def _render_and_print(*args: Any, **kwargs: Any) -> None:
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")


def render_turn(turn: ConversationTurn) -> Text:
    if turn.is_error:
        return Text(f"✗ {turn.content}", style="red")
    if turn.role is Role.USER:
        return Text(f"› {turn.content}", style="bold cyan")
    return Text(turn.content)


def print_turns(turns: Iterable[ConversationTurn]) -> None:
    for turn in turns:
        _render_and_print(render_turn(turn))


def render_suggestions(suggestions: Suggestions) -> Text:
    text = Text()
    if suggestions.no_match:
        text.append("no match", style="yellow")
        if suggestions.items:
            text.append("\n")
    for index, cmd in enumerate(suggestions.items[:MAX_SUGGESTIONS]):
        marker = "›" if index == suggestions.selected and not suggestions.no_match else " "
        style = "dim" if suggestions.no_match else ("bold" if marker == "›" else "")
        text.append(f"{marker} {cmd.full_command:<20} {cmd.summary}\n", style=style)
    hidden = len(suggestions.items) - MAX_SUGGESTIONS
    if hidden > 0:
        text.append(f"  … {hidden} more\n", style="dim")
    return text


def print_suggestions(suggestions: Suggestions) -> None:
    _render_and_print(render_suggestions(suggestions), end="")


def commands_table(registry: CommandRegistry) -> Table:
    table = Table(box=None, show_header=True, header_style="bold")
    table.add_column("command")
    table.add_column("source")
    table.add_column("v", justify="right")
    table.add_column("summary")
    table.add_column("uses")
    for cmd in registry:
        source = "official" if cmd.source is CommandSource.OFFICIAL else cmd.scope
        if cmd.pinned:
            source = f"{source} (pinned)"
        uses = [label for label, flag in (("bash", cmd.has_bash_commands), ("files", cmd.has_file_references)) if flag]
        table.add_row(cmd.full_command, source, str(cmd.version), cmd.summary, ", ".join(uses))
    return table


def print_commands(registry: CommandRegistry) -> None:
    _render_and_print(commands_table(registry))


def status_line(snapshot: SyncSnapshot | None) -> str:
    if snapshot is None:
        return "model: unresolved | upstream: not synced"
    model = snapshot.model.model_id if snapshot.model.is_resolved else "unresolved"
    if snapshot.model.is_pinned:
        model = f"{model} (pinned)"
    upstream = "online" if snapshot.upstream_available else "offline, cached"
    return f"model: {model} | upstream: {upstream} | commands: {len(snapshot.commands)}"


def build_status_toolbar(snapshot: SyncSnapshot | None) -> list[tuple[str, str]]:
    gap = ("", "  ")
    return [
        ("class:toolbar.value", status_line(snapshot)),
        gap,
        ("class:toolbar.label", "F5: "),
        ("class:toolbar.value", "resync"),
        gap,
        ("class:toolbar.label", "PgUp/PgDn: "),
        ("class:toolbar.value", "scroll"),
    ]


def print_notice(message: str, *, style: str = "magenta") -> None:
    _render_and_print(Text(message, style=style))
