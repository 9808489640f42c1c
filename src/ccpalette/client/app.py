"""Wiring of the sync engine, dispatch state machine and session view.

:class:`PaletteApp` is the surface the terminal shell talks to:
``on_enter``, ``handle_keystroke`` and ``resync``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from ccpalette.config_store import ConfigStore
from ccpalette.dispatch import ENTER, DispatchState, DispatchStateMachine
from ccpalette.local_commands import LocalCommandStore
from ccpalette.paths import sessions_dir
from ccpalette.registry import CommandRegistry
from ccpalette.schema import SyncSnapshot
from ccpalette.session_view import SessionView, ViewportState
from ccpalette.settings import PaletteSettings
from ccpalette.sync import SyncEngine
from ccpalette.transcript_store import TranscriptStore
from ccpalette.upstream import CommandExecutor, DisconnectedExecutor, SettingsFileUpstream, UpstreamClientAdapter

logger = logging.getLogger(__name__)


class PaletteApp:
    def __init__(
        self,
        settings: PaletteSettings,
        upstream: UpstreamClientAdapter,
        executor: CommandExecutor,
        *,
        store: ConfigStore | None = None,
        transcripts: TranscriptStore | None = None,
        local_commands: LocalCommandStore | None = None,
    ) -> None:
        self.settings = settings
        self.upstream = upstream
        self.executor = executor
        self.engine = SyncEngine(
            store or ConfigStore(),
            upstream,
            settings,
            local_commands=local_commands,
        )
        self.view = SessionView(transcripts, height=settings.viewport_height)
        self.dispatch = DispatchStateMachine(lambda: self.engine.registry, executor, self.view)
        self.engine.add_listener(self._on_snapshot)

    @classmethod
    def build(
        cls,
        settings: PaletteSettings,
        *,
        agent_program: str | None = None,
        agent_args: Iterable[str] = (),
    ) -> "PaletteApp":
        """Default wiring: ACP upstream when an agent program is given, else the settings files."""
        upstream: UpstreamClientAdapter
        executor: CommandExecutor
        if agent_program:
            from ccpalette.client.acp_upstream import ACPUpstream

            acp_upstream = ACPUpstream(agent_program, agent_args, cwd=settings.project_dir)
            upstream, executor = acp_upstream, acp_upstream
        else:
            upstream, executor = SettingsFileUpstream(settings.upstream_dir), DisconnectedExecutor()
        return cls(
            settings,
            upstream,
            executor,
            transcripts=TranscriptStore(sessions_dir(), max_sessions=settings.max_sessions),
            local_commands=LocalCommandStore(settings.project_dir or Path.cwd(), settings.upstream_dir),
        )

    @property
    def registry(self) -> CommandRegistry:
        return self.engine.registry

    @property
    def snapshot(self) -> SyncSnapshot | None:
        return self.engine.snapshot

    def _on_snapshot(self, snapshot: SyncSnapshot, registry: CommandRegistry) -> None:
        self.dispatch.refresh_suggestions()

    async def start(self, *, background: bool = True) -> SyncSnapshot:
        self.engine.load_cached()
        snapshot = await self.engine.synchronize()
        if background:
            self.engine.start_background_resync()
        return snapshot

    def on_enter(self, session_id: str) -> ViewportState:
        return self.view.on_enter(session_id)

    async def handle_keystroke(self, key: str) -> DispatchState:
        return await self.dispatch.handle_keystroke(key)

    async def resync(self, force: bool = False) -> SyncSnapshot:
        return await self.engine.synchronize(force)

    async def submit_line(self, line: str) -> DispatchState:
        """Feed a full input line followed by Enter."""
        await self.dispatch.feed(line)
        return await self.dispatch.handle_keystroke(ENTER)

    async def close(self) -> None:
        await self.engine.stop_background_resync()
        for component in {id(self.upstream): self.upstream, id(self.executor): self.executor}.values():
            closer = getattr(component, "close", None)
            if closer is not None:
                await closer()
