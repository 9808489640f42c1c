"""Interactive prompt loop on top of :class:`PaletteApp`."""

from __future__ import annotations

import logging
import sys
from typing import Iterable

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.completion import Completer, Completion  # type: ignore
from prompt_toolkit.document import Document  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from ccpalette.client.app import PaletteApp
from ccpalette.client.display import build_status_toolbar, print_notice, print_suggestions, print_turns, status_line
from ccpalette.dispatch import ESCAPE, DispatchState, split_command_line

logger = logging.getLogger(__name__)

CANCEL_TOKEN = "__CANCEL__"
RESYNC_TOKEN = "__RESYNC__"
SCROLL_UP_TOKEN = "__SCROLL_UP__"
SCROLL_DOWN_TOKEN = "__SCROLL_DOWN__"


class SlashCommandCompleter(Completer):
    """Completion popup fed by the app's current registry."""

    def __init__(self, app: PaletteApp) -> None:
        self.app = app

    def get_completions(self, document: Document, complete_event) -> Iterable[Completion]:  # type: ignore[override]
        text = document.text_before_cursor.lstrip()
        if not text.startswith("/") or " " in text:
            return
        name, _ = split_command_line(text)
        for cmd in self.app.registry.prefix_search(name):
            yield Completion(
                cmd.full_command,
                start_position=-len(text),
                display=cmd.full_command,
                display_meta=cmd.summary,
            )


def _print_window(app: PaletteApp) -> None:
    print_turns(app.view.visible_turns())
    if not app.view.viewport.is_pinned_to_bottom:
        print_notice("[scrolled back; PgDn returns to the latest turn]", style="dim")


async def interactive_loop(app: PaletteApp, session_id: str) -> None:
    """Read lines, dispatch them, and print the turns they produce."""
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    @kb.add("f5")
    def _(event):  # type: ignore
        event.app.exit(result=RESYNC_TOKEN)

    @kb.add("pageup")
    def _(event):  # type: ignore
        event.app.exit(result=SCROLL_UP_TOKEN)

    @kb.add("pagedown")
    def _(event):  # type: ignore
        event.app.exit(result=SCROLL_DOWN_TOKEN)

    session: PromptSession = PromptSession(
        key_bindings=kb,
        completer=SlashCommandCompleter(app),
        complete_while_typing=True,
        bottom_toolbar=lambda: build_status_toolbar(app.snapshot),
    )

    app.on_enter(session_id)
    print_notice(f"session {session_id} | {status_line(app.snapshot)}")
    _print_window(app)
    printed = app.view.bottom_turn_id() or 0
    height = app.settings.viewport_height

    while True:
        try:
            line = await session.prompt_async("› ")
        except EOFError:
            break
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue

        if line == CANCEL_TOKEN:
            continue
        if line == RESYNC_TOKEN:
            snapshot = await app.resync(force=True)
            print_notice(f"[resynced] {status_line(snapshot)}")
            continue
        if line in (SCROLL_UP_TOKEN, SCROLL_DOWN_TOKEN):
            app.view.on_user_scroll(-height if line == SCROLL_UP_TOKEN else height)
            _print_window(app)
            continue
        if not line.strip():
            continue

        if await app.submit_line(line) is DispatchState.SUGGESTING:
            # Nothing matched; show the closest list and drop the input.
            print_suggestions(app.dispatch.suggestions)
            await app.handle_keystroke(ESCAPE)
            continue
        new_turns = [turn for turn in app.view.turns if turn.id > printed]
        if app.view.viewport.is_pinned_to_bottom:
            print_turns(new_turns)
        elif new_turns:
            print_notice(f"[{len(new_turns)} new turn(s) below]", style="dim")
        printed = app.view.bottom_turn_id() or printed
