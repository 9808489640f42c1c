"""Persistence for the reconciled sync snapshot."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from ccpalette.errors import ConfigCorrupt
from ccpalette.paths import snapshot_path
from ccpalette.schema import SNAPSHOT_SCHEMA_VERSION, SyncSnapshot

logger = logging.getLogger(__name__)


class ConfigStore:
    """Read and atomically replace the persisted :class:`SyncSnapshot`.

    Writes go to a sibling temp file which is then renamed over the target,
    so a concurrently starting process sees either the old or the new file.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or snapshot_path()

    def load(self) -> SyncSnapshot | None:
        """Return the persisted snapshot, ``None`` if there is none.

        Raises ConfigCorrupt when the file exists but cannot be used.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ConfigCorrupt(self.path, str(exc)) from exc
        except UnicodeDecodeError as exc:
            raise ConfigCorrupt(self.path, f"not UTF-8: {exc}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigCorrupt(self.path, f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigCorrupt(self.path, "snapshot is not a JSON object")
        version = payload.get("schema_version")
        if version != SNAPSHOT_SCHEMA_VERSION:
            raise ConfigCorrupt(self.path, f"unsupported schema_version {version!r}")
        try:
            return SyncSnapshot.model_validate(payload)
        except ValidationError as exc:
            raise ConfigCorrupt(self.path, f"{exc.error_count()} validation error(s)") from exc

    def save(self, snapshot: SyncSnapshot) -> None:
        """Write through a temp file and ``Path.replace`` so readers never see half a snapshot."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.path)
        logger.debug("snapshot.saved path=%s commands=%d", self.path, len(snapshot.commands))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
