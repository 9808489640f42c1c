"""Scroll position and turn ordering for one conversation transcript."""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, replace

from ccpalette.log_utils import log_context
from ccpalette.schema import ConversationTurn, Role
from ccpalette.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewportState:
    """Viewport anchored on ``top_visible_turn_id``.

    While ``is_pinned_to_bottom`` is true the anchor follows the newest turn.
    The renderer shows up to ``height`` turns ending at the anchor.
    """

    top_visible_turn_id: int | None = None
    is_pinned_to_bottom: bool = True
    height: int = 20


class SessionView:
    def __init__(self, store: TranscriptStore | None = None, *, height: int = 20) -> None:
        self.store = store
        self.session_id: str | None = None
        self._turns: list[ConversationTurn] = []
        self._ids: list[int] = []
        self.viewport = ViewportState(height=height)

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def bottom_turn_id(self) -> int | None:
        return self._ids[-1] if self._ids else None

    def next_turn_id(self) -> int:
        return (self._ids[-1] + 1) if self._ids else 1

    def on_enter(self, session_id: str) -> ViewportState:
        """Load the session's turns and jump to the latest one."""
        turns = self.store.load(session_id) if self.store is not None else []
        self.session_id = session_id
        self._turns = list(turns)
        self._ids = [turn.id for turn in turns]
        self.viewport = ViewportState(
            top_visible_turn_id=self.bottom_turn_id(),
            is_pinned_to_bottom=True,
            height=self.viewport.height,
        )
        with log_context(session_id=session_id):
            logger.info("Entered session with %d turns", len(turns))
        return self.viewport

    def on_append(self, turn: ConversationTurn) -> ViewportState:
        """Add a turn; the viewport only follows it while pinned to the bottom.

        Ids must increase, so a replayed or out-of-order turn raises ValueError.
        """
        if self._ids and turn.id <= self._ids[-1]:
            raise ValueError(f"turn id {turn.id} does not follow {self._ids[-1]}")
        self._turns.append(turn)
        self._ids.append(turn.id)
        if self.store is not None and self.session_id is not None:
            try:
                self.store.append(self.session_id, turn)
            except OSError:
                logger.exception("Failed to persist turn %d", turn.id)
        if self.viewport.is_pinned_to_bottom:
            self.viewport = replace(self.viewport, top_visible_turn_id=turn.id)
        return self.viewport

    def append_text(self, role: Role, content: str, *, is_error: bool = False) -> ConversationTurn:
        """Wrap ``content`` in the next turn id and append it."""
        turn = ConversationTurn(id=self.next_turn_id(), role=role, content=content, is_error=is_error)
        self.on_append(turn)
        return turn

    def _anchor_index(self) -> int:
        anchor = self.viewport.top_visible_turn_id
        if anchor is None:
            return len(self._ids) - 1
        index = bisect.bisect_left(self._ids, anchor)
        return min(index, len(self._ids) - 1)

    def on_user_scroll(self, delta: int) -> ViewportState:
        """Move the anchor by ``delta`` turns (negative scrolls up).

        Scrolling away unpins the view; landing on the last turn re-pins it.
        """
        if not self._ids:
            self.viewport = replace(self.viewport, top_visible_turn_id=None, is_pinned_to_bottom=True)
            return self.viewport
        last = len(self._ids) - 1
        index = max(0, min(last, self._anchor_index() + delta))
        self.viewport = replace(
            self.viewport,
            top_visible_turn_id=self._ids[index],
            is_pinned_to_bottom=index == last,
        )
        return self.viewport

    def visible_turns(self) -> list[ConversationTurn]:
        if not self._turns:
            return []
        end = self._anchor_index() + 1
        start = max(0, end - self.viewport.height)
        return self._turns[start:end]
