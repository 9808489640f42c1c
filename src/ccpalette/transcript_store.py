"""On-disk conversation transcripts, one JSONL file per session."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from ccpalette.schema import ConversationTurn

logger = logging.getLogger(__name__)

TURNS_FILE = "turns.jsonl"


@dataclass
class TranscriptStore:
    """Persist conversation turns so re-entering a session can replay them."""

    root: Path
    max_sessions: int = 50

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.cleanup()

    def session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in {".", ".."}:
            raise ValueError(f"invalid session id: {session_id!r}")
        path = self.root / session_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def append(self, session_id: str, turn: ConversationTurn) -> None:
        turns_path = self.session_dir(session_id) / TURNS_FILE
        with turns_path.open("a", encoding="utf-8") as fh:
            fh.write(turn.model_dump_json() + "\n")

    def load(self, session_id: str) -> list[ConversationTurn]:
        """Return stored turns in id order; unreadable lines are skipped."""
        turns_path = self.session_dir(session_id) / TURNS_FILE
        if not turns_path.exists():
            return []
        turns: dict[int, ConversationTurn] = {}
        for lineno, raw in enumerate(turns_path.read_bytes().splitlines(), start=1):
            if not raw.strip():
                continue
            try:
                turn = ConversationTurn.model_validate_json(raw.decode("utf-8"))
            except UnicodeDecodeError as exc:
                logger.warning("Skipping turn %s:%d: %s", turns_path, lineno, exc.reason)
                continue
            except ValidationError as exc:
                logger.warning("Skipping turn %s:%d: %s", turns_path, lineno, exc.errors()[0]["msg"])
                continue
            turns.setdefault(turn.id, turn)
        return [turns[key] for key in sorted(turns)]

    def sessions(self) -> list[str]:
        """Known session ids, most recently written first."""
        entries = [
            (p.name, (p / TURNS_FILE).stat().st_mtime)
            for p in self.root.iterdir()
            if p.is_dir() and (p / TURNS_FILE).exists()
        ]
        entries.sort(key=lambda item: item[1], reverse=True)
        return [name for name, _ in entries]

    def cleanup(self) -> None:
        """Bound storage by keeping only the newest ``max_sessions`` sessions."""
        try:
            names = self.sessions()
        except FileNotFoundError:
            return
        for name in names[self.max_sessions :]:
            shutil.rmtree(self.root / name, ignore_errors=True)
