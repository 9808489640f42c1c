"""Error taxonomy for sync and dispatch.

All of these are recovered inside the sync engine or the dispatch state
machine; none of them is meant to reach the terminal shell.
"""

from __future__ import annotations

from pathlib import Path


class PaletteError(RuntimeError):
    pass


class UpstreamUnavailable(PaletteError):
    """The upstream client's configuration could not be read (absent, locked, timed out)."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class CommandNotFound(PaletteError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown command: /{name}")
        self.name = name


class ExecutionFailure(PaletteError):
    """The upstream client failed to run a dispatched command."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"/{name} failed: {reason}" if name else reason)
        self.name = name
        self.reason = reason


class ConfigCorrupt(PaletteError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Unreadable snapshot at {path}: {reason}")
        self.path = path
        self.reason = reason
