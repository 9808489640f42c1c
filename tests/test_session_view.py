from __future__ import annotations

from pathlib import Path

import pytest

from ccpalette.schema import ConversationTurn, Role
from ccpalette.session_view import SessionView
from ccpalette.transcript_store import TranscriptStore


def _turn(turn_id: int, content: str | None = None) -> ConversationTurn:
    role = Role.USER if turn_id % 2 else Role.ASSISTANT
    return ConversationTurn(id=turn_id, role=role, content=content or f"turn {turn_id}")


def _seeded_view(tmp_path: Path, count: int, *, height: int = 20) -> SessionView:
    store = TranscriptStore(tmp_path / "sessions")
    for turn_id in range(1, count + 1):
        store.append("s1", _turn(turn_id))
    view = SessionView(store, height=height)
    view.on_enter("s1")
    return view


def test_on_enter_jumps_to_latest_turn(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 50)

    assert view.viewport.top_visible_turn_id == 50
    assert view.viewport.is_pinned_to_bottom is True
    visible = view.visible_turns()
    assert [t.id for t in visible] == list(range(31, 51))


def test_on_enter_empty_session(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 0)

    assert view.viewport.top_visible_turn_id is None
    assert view.viewport.is_pinned_to_bottom is True
    assert view.visible_turns() == []
    assert view.next_turn_id() == 1


def test_append_while_pinned_follows_new_turn(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 3)

    view.on_append(_turn(4))

    assert view.viewport.top_visible_turn_id == 4
    assert view.viewport.is_pinned_to_bottom is True


def test_scroll_away_unpins_and_append_does_not_move_view(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 50)

    state = view.on_user_scroll(-10)
    assert state.top_visible_turn_id == 40
    assert state.is_pinned_to_bottom is False

    view.on_append(_turn(51))

    assert view.viewport.top_visible_turn_id == 40
    assert view.viewport.is_pinned_to_bottom is False
    assert view.visible_turns()[-1].id == 40


def test_scrolling_back_to_bottom_repins(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 50)
    view.on_user_scroll(-5)

    state = view.on_user_scroll(100)

    assert state.top_visible_turn_id == 50
    assert state.is_pinned_to_bottom is True
    view.append_text(Role.USER, "again")
    assert view.viewport.top_visible_turn_id == 51


def test_scroll_is_clamped_at_first_turn(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 5, height=2)

    state = view.on_user_scroll(-100)

    assert state.top_visible_turn_id == 1
    assert state.is_pinned_to_bottom is False
    assert [t.id for t in view.visible_turns()] == [1]


def test_scroll_on_empty_view_stays_pinned() -> None:
    view = SessionView()

    state = view.on_user_scroll(-3)

    assert state.top_visible_turn_id is None
    assert state.is_pinned_to_bottom is True


def test_pinned_iff_anchor_is_last_turn(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 10)
    for delta in (-1, -3, 2, 1, 1, -9, 9):
        state = view.on_user_scroll(delta)
        assert state.is_pinned_to_bottom == (state.top_visible_turn_id == view.bottom_turn_id())


def test_on_append_rejects_non_increasing_ids(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 3)

    with pytest.raises(ValueError):
        view.on_append(_turn(3))


def test_appended_turns_are_persisted_for_reentry(tmp_path: Path) -> None:
    view = _seeded_view(tmp_path, 2)
    view.append_text(Role.USER, "/help")
    view.append_text(Role.ASSISTANT, "boom", is_error=True)

    reopened = SessionView(TranscriptStore(tmp_path / "sessions"))
    reopened.on_enter("s1")

    assert [t.id for t in reopened.turns] == [1, 2, 3, 4]
    assert reopened.turns[-1].is_error is True
    assert reopened.viewport.top_visible_turn_id == 4


def test_on_enter_survives_corrupted_transcript_bytes(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path / "sessions")
    store.append("s1", _turn(1))
    with (tmp_path / "sessions" / "s1" / "turns.jsonl").open("ab") as fh:
        fh.write(b"\xff\xfe garbage\n")
    store.append("s1", _turn(2))

    view = SessionView(store)
    state = view.on_enter("s1")

    assert [t.id for t in view.turns] == [1, 2]
    assert state.top_visible_turn_id == 2
