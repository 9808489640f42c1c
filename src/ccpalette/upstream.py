"""Read boundary to the upstream CC client, plus the execution boundary.

Adapters only read upstream state. When the upstream configuration is absent,
locked or malformed they raise :class:`UpstreamUnavailable`; they never fill
in a default model or command list.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ccpalette.errors import ExecutionFailure, UpstreamUnavailable
from ccpalette.schema import CommandDescriptor, CommandSource, ModelOrigin, ModelSelection, utcnow

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
COMMANDS_FILE = "commands.json"


class UpstreamClientAdapter(ABC):
    """Authoritative source for official commands and the active model."""

    name = "upstream"

    @abstractmethod
    async def fetch_official_commands(self) -> frozenset[CommandDescriptor]:
        ...

    @abstractmethod
    async def fetch_active_model(self) -> ModelSelection:
        ...


class CommandExecutor(ABC):
    """Entry point that runs a command (or plain prompt) in the upstream client."""

    @abstractmethod
    async def execute(self, name: str, argument: str) -> str:
        """Run ``/name argument`` and return the reply text.

        An empty ``name`` means ``argument`` is a plain prompt. Raises
        ExecutionFailure when the upstream client reports an error.
        """


class DisconnectedExecutor(CommandExecutor):
    """Executor used when no upstream client process is attached."""

    async def execute(self, name: str, argument: str) -> str:
        raise ExecutionFailure(name, "no upstream client is connected (start with --agent)")


def official_descriptor(name: str, description: str | None = None, hint: str | None = None) -> CommandDescriptor:
    hint = hint or ""
    return CommandDescriptor(
        name=name,
        summary=description or hint,
        hint=hint,
        accepts_arguments=bool(hint),
        source=CommandSource.OFFICIAL,
        scope="upstream",
    )


def parse_command_catalog(payload: Any) -> frozenset[CommandDescriptor]:
    """Turn a ``commands.json`` payload into descriptors.

    Accepts a bare list or ``{"commands": [...]}``; each entry needs ``name``
    and may carry ``description`` and ``argumentHint``.
    """
    entries: Any = payload.get("commands", []) if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise ValueError("command catalog must be a list or an object with 'commands'")

    commands: dict[str, CommandDescriptor] = {}
    for entry in entries:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"invalid command entry: {entry!r}")
        descriptor = official_descriptor(
            str(entry["name"]),
            entry.get("description"),
            entry.get("argumentHint") or entry.get("hint"),
        )
        commands[descriptor.name] = descriptor
    return frozenset(commands.values())


class SettingsFileUpstream(UpstreamClientAdapter):
    """Reads the upstream client's own config directory (``~/.claude`` by default).

    The active model is ``settings.json``'s ``model`` key (or
    ``env.ANTHROPIC_MODEL``); the official command catalog is ``commands.json``.
    """

    name = "settings-file"

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir

    def _read_json(self, file_name: str) -> Any:
        path = self.config_dir / file_name
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise UpstreamUnavailable(f"{path} does not exist", source=self.name) from exc
        except OSError as exc:
            # PermissionError on Windows while the upstream client holds the file.
            raise UpstreamUnavailable(f"{path} is not readable: {exc}", source=self.name) from exc
        except UnicodeDecodeError as exc:
            raise UpstreamUnavailable(f"{path} is not UTF-8: {exc}", source=self.name) from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise UpstreamUnavailable(f"{path} is not valid JSON: {exc}", source=self.name) from exc

    async def fetch_official_commands(self) -> frozenset[CommandDescriptor]:
        payload = await asyncio.to_thread(self._read_json, COMMANDS_FILE)
        try:
            return parse_command_catalog(payload)
        except (ValueError, ValidationError) as exc:
            raise UpstreamUnavailable(f"malformed {COMMANDS_FILE}: {exc}", source=self.name) from exc

    async def fetch_active_model(self) -> ModelSelection:
        payload = await asyncio.to_thread(self._read_json, SETTINGS_FILE)
        model_id = None
        if isinstance(payload, dict):
            model_id = payload.get("model")
            env = payload.get("env")
            if not model_id and isinstance(env, dict):
                model_id = env.get("ANTHROPIC_MODEL")
        if not isinstance(model_id, str) or not model_id.strip():
            raise UpstreamUnavailable(f"no model configured in {SETTINGS_FILE}", source=self.name)
        return ModelSelection(
            model_id=model_id.strip(),
            origin=ModelOrigin.UPSTREAM_FOLLOWED,
            resolved_at=utcnow(),
        )
