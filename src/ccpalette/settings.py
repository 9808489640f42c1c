"""Runtime settings for the palette, read from the environment.

Values come from ``CCPALETTE_*`` environment variables. A ``.env`` file in the
user config dir is loaded first so it can provide defaults without overriding
anything already exported in the shell.
"""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from ccpalette.paths import config_dir, upstream_home

DEFAULT_RESYNC_INTERVAL = 300.0
DEFAULT_UPSTREAM_TIMEOUT = 5.0
DEFAULT_VIEWPORT_HEIGHT = 20
DEFAULT_MAX_SESSIONS = 50


def parse_level(value: str | None, default: int) -> int:
    """Parse a log level string or numeric value from environment settings."""
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def parse_bool(value: str | None, default: bool) -> bool:
    """Parse a truthy/falsy toggle from environment settings."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Parse an integer setting, returning the default on invalid input."""
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        parsed = float(value)
        if parsed >= 0:
            return parsed
    return default


@dataclass(frozen=True)
class PaletteSettings:
    """Tunable parameters for sync, precedence and the session view.

    ``local_overrides_shadow`` decides whether an unpinned local command may
    hide an official command of the same name; pinned commands always win.
    """

    resync_interval: float = DEFAULT_RESYNC_INTERVAL
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    upstream_dir: Path = Path("~/.claude")
    project_dir: Path | None = None
    local_overrides_shadow: bool = False
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    max_sessions: int = DEFAULT_MAX_SESSIONS


def load_settings(*, project_dir: Path | None = None, env_file: Path | None = None) -> PaletteSettings:
    """Build settings from ``.env`` and ``CCPALETTE_*`` environment variables."""

    dotenv_path = env_file or (config_dir() / ".env")
    if dotenv_path.exists():
        load_dotenv(dotenv_path, override=False)

    upstream_dir = os.getenv("CCPALETTE_UPSTREAM_DIR")
    height = parse_int(os.getenv("CCPALETTE_VIEWPORT_HEIGHT"), DEFAULT_VIEWPORT_HEIGHT)
    return PaletteSettings(
        resync_interval=parse_float(os.getenv("CCPALETTE_RESYNC_INTERVAL"), DEFAULT_RESYNC_INTERVAL),
        upstream_timeout=parse_float(os.getenv("CCPALETTE_UPSTREAM_TIMEOUT"), DEFAULT_UPSTREAM_TIMEOUT),
        upstream_dir=Path(upstream_dir).expanduser() if upstream_dir else upstream_home(),
        project_dir=project_dir,
        local_overrides_shadow=parse_bool(os.getenv("CCPALETTE_LOCAL_OVERRIDES_SHADOW"), False),
        viewport_height=max(1, height),
        max_sessions=max(1, parse_int(os.getenv("CCPALETTE_MAX_SESSIONS"), DEFAULT_MAX_SESSIONS)),
    )
