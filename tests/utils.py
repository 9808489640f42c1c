from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ccpalette.config_store import ConfigStore
from ccpalette.errors import ExecutionFailure, UpstreamUnavailable
from ccpalette.local_commands import LocalCommandStore
from ccpalette.schema import CommandDescriptor, ModelOrigin, ModelSelection
from ccpalette.settings import PaletteSettings
from ccpalette.sync import SyncEngine
from ccpalette.upstream import CommandExecutor, UpstreamClientAdapter, official_descriptor


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeUpstream(UpstreamClientAdapter):
    """Scriptable upstream: set ``commands``/``model`` or make it fail."""

    name = "fake"

    def __init__(self, commands: dict[str, str] | None = None, model: str | None = "m1") -> None:
        self.commands = dict(commands or {})
        self.model = model
        self.fail_commands = False
        self.fail_model = False
        self.hang = False
        self.command_calls = 0
        self.model_calls = 0

    async def fetch_official_commands(self) -> frozenset[CommandDescriptor]:
        self.command_calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail_commands:
            raise UpstreamUnavailable("commands locked", source=self.name)
        return frozenset(official_descriptor(name, summary) for name, summary in self.commands.items())

    async def fetch_active_model(self) -> ModelSelection:
        self.model_calls += 1
        if self.fail_model or self.model is None:
            raise UpstreamUnavailable("no model", source=self.name)
        return ModelSelection(model_id=self.model, origin=ModelOrigin.UPSTREAM_FOLLOWED)


class RecordingExecutor(CommandExecutor):
    def __init__(self, reply: str = "done", *, fail: str | None = None) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: list[tuple[str, str]] = []
        self.release: asyncio.Event | None = None

    async def execute(self, name: str, argument: str) -> str:
        self.calls.append((name, argument))
        if self.release is not None:
            await self.release.wait()
        if self.fail is not None:
            raise ExecutionFailure(name, self.fail)
        return f"{self.reply}: /{name}" if name else f"{self.reply}: {argument}"


def make_settings(tmp_path: Path, **overrides) -> PaletteSettings:
    values = dict(
        resync_interval=300.0,
        upstream_timeout=0.5,
        upstream_dir=tmp_path / "upstream",
        project_dir=tmp_path / "project",
    )
    values.update(overrides)
    return PaletteSettings(**values)


def make_engine(
    tmp_path: Path,
    upstream: UpstreamClientAdapter,
    *,
    clock: FakeClock | None = None,
    local: bool = False,
    **overrides,
) -> SyncEngine:
    settings = make_settings(tmp_path, **overrides)
    local_commands = LocalCommandStore(settings.project_dir, settings.upstream_dir) if local else None
    return SyncEngine(
        ConfigStore(tmp_path / "state" / "snapshot.json"),
        upstream,
        settings,
        local_commands=local_commands,
        clock=clock or FakeClock(),
    )


def write_command(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path
