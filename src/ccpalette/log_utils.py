"""File logging for the palette.

The prompt owns the terminal, so records go to a rotating file under the
platform log dir. Structured fields come from two places and are merged onto
each record as ``record.fields``:

* ``log_context(session_id=...)`` binds fields for everything logged inside
  the block (contextvars, so concurrent tasks do not leak into each other);
* ``log_event(logger, "sync.fallback", reason=...)`` adds per-record fields.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

from ccpalette.paths import log_dir
from ccpalette.settings import parse_bool, parse_int, parse_level

LOG_FILE_NAME = "ccpalette.log"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_bound_fields: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar("ccpalette_log_fields", default={})


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    max_bytes: int = 2_000_000
    backup_count: int = 3
    logger_levels: Dict[str, int] = field(default_factory=dict)


def build_log_config(*, log_file_name: str = LOG_FILE_NAME, default_level: int = logging.INFO) -> LogConfig:
    """Read ``CCPALETTE_LOG_*`` overrides on top of the defaults."""

    env = os.environ
    directory = Path(env.get("CCPALETTE_LOG_DIR") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    defaults = LogConfig(log_file=directory / log_file_name)
    return LogConfig(
        log_file=defaults.log_file,
        level=parse_level(env.get("CCPALETTE_LOG_LEVEL"), default_level),
        stderr=parse_bool(env.get("CCPALETTE_LOG_STDERR"), defaults.stderr),
        json=parse_bool(env.get("CCPALETTE_LOG_JSON"), defaults.json),
        max_bytes=parse_int(env.get("CCPALETTE_LOG_MAX_BYTES"), defaults.max_bytes),
        backup_count=parse_int(env.get("CCPALETTE_LOG_BACKUPS"), defaults.backup_count),
        # acp logs every JSON-RPC frame at DEBUG.
        logger_levels={"acp": logging.WARNING},
    )


def configure_logging(config: LogConfig) -> None:
    """Install the palette's handlers on the root logger, replacing existing ones."""

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())

    formatter = JsonLineFormatter() if config.json else KeyValueFormatter(TEXT_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(FieldsFilter())
    logging.basicConfig(level=config.level, handlers=handlers, force=True)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every record logged inside the block; ``None`` values are dropped."""

    token = _bound_fields.set(
        {**_bound_fields.get(), **{key: value for key, value in fields.items() if value is not None}}
    )
    try:
        yield
    finally:
        _bound_fields.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, event, extra={"fields": fields})


def _render(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    text = str(value)
    if not text or any(ch.isspace() or ch in '="' for ch in text):
        return json.dumps(text)
    return text


class FieldsFilter(logging.Filter):
    """Merge bound context fields with the record's own ``fields`` (record wins)."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        own = getattr(record, "fields", None) or {}
        merged = {**_bound_fields.get(), **own}
        record.fields = {key: value for key, value in merged.items() if value is not None}
        return True


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", {})
        if not fields:
            return line
        return line + " " + " ".join(f"{key}={_render(fields[key])}" for key in sorted(fields))


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **getattr(record, "fields", {}),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)
