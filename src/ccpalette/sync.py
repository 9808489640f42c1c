"""Reconcile the persisted snapshot with the upstream client's configuration.

Precedence rules:

* The upstream command list is authoritative for OFFICIAL commands. Each
  successful sync replaces the previous official set, so commands the
  upstream dropped disappear.
* Local overrides survive only while their markdown file still exists, or
  when they were pinned explicitly.
* The model follows the upstream's active model unless the user pinned one.
  There is no hardcoded default model.
* When the upstream cannot be read the last persisted snapshot is reused as
  is, marked ``upstream_available=False``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, TypeVar

from ccpalette.config_store import ConfigStore
from ccpalette.errors import ConfigCorrupt, UpstreamUnavailable
from ccpalette.local_commands import LocalCommandStore
from ccpalette.log_utils import log_event
from ccpalette.registry import CommandRegistry
from ccpalette.schema import (
    CommandDescriptor,
    ModelOrigin,
    ModelSelection,
    SyncSnapshot,
    sort_commands,
    utcnow,
)
from ccpalette.settings import PaletteSettings
from ccpalette.upstream import UpstreamClientAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")
SnapshotListener = Callable[[SyncSnapshot, CommandRegistry], None]
_VersionKey = tuple[str, str, bool]


def _key(descriptor: CommandDescriptor) -> _VersionKey:
    return (descriptor.name, descriptor.source.value, descriptor.pinned)


def _carry_version(
    descriptor: CommandDescriptor, previous: dict[_VersionKey, CommandDescriptor]
) -> CommandDescriptor:
    """Keep the old version for unchanged commands, bump it for changed ones."""
    prior = previous.get(_key(descriptor))
    if prior is None:
        return descriptor
    version = prior.version if prior.same_payload(descriptor) else prior.version + 1
    if version == descriptor.version:
        return descriptor
    return descriptor.model_copy(update={"version": version})


class SyncEngine:
    """Owns the current snapshot and the registry built from it."""

    def __init__(
        self,
        store: ConfigStore,
        upstream: UpstreamClientAdapter,
        settings: PaletteSettings,
        *,
        local_commands: LocalCommandStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.settings = settings
        self.local_commands = local_commands
        self._clock = clock
        self._current: SyncSnapshot | None = None
        self._listeners: list[SnapshotListener] = []
        self._lock = asyncio.Lock()
        self._resync_task: asyncio.Task[None] | None = None
        self.registry = self._build_registry(None)

    @property
    def snapshot(self) -> SyncSnapshot | None:
        return self._current

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def _build_registry(self, snapshot: SyncSnapshot | None) -> CommandRegistry:
        return CommandRegistry(
            snapshot,
            shadow_local=self.settings.local_overrides_shadow,
            pin_sink=self.pin_command,
        )

    def _publish(self, snapshot: SyncSnapshot) -> None:
        registry = self._build_registry(snapshot)
        # Single reference swap: readers see the old or the new registry.
        self._current = snapshot
        self.registry = registry
        for listener in list(self._listeners):
            try:
                listener(snapshot, registry)
            except Exception:  # noqa: BLE001
                logger.exception("Snapshot listener failed")

    def _commit(self, snapshot: SyncSnapshot) -> SyncSnapshot:
        try:
            self.store.save(snapshot)
        except OSError as exc:
            log_event(logger, "sync.persist_failed", level=logging.ERROR, path=str(self.store.path), error=str(exc))
        self._publish(snapshot)
        return snapshot

    def _read_persisted(self) -> SyncSnapshot | None:
        try:
            return self.store.load()
        except ConfigCorrupt as exc:
            log_event(logger, "sync.config_corrupt", level=logging.WARNING, reason=exc.reason)
            return None

    def load_cached(self) -> SyncSnapshot | None:
        """Publish whatever is on disk without contacting the upstream client."""
        snapshot = self._read_persisted()
        if snapshot is not None:
            self._publish(snapshot)
        return snapshot

    def _is_fresh(self, snapshot: SyncSnapshot) -> bool:
        age = snapshot.age_seconds(self._clock())
        return age is not None and 0 <= age < self.settings.resync_interval

    async def _bounded(self, call: Callable[[], Awaitable[T]], what: str) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self.settings.upstream_timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(
                f"{what} timed out after {self.settings.upstream_timeout}s", source=self.upstream.name
            ) from exc
        except OSError as exc:
            raise UpstreamUnavailable(f"{what} failed: {exc}", source=self.upstream.name) from exc

    async def synchronize(self, force: bool = False) -> SyncSnapshot:
        """Return a snapshot reconciled against the upstream client.

        Within the re-sync interval (and without ``force``) the persisted
        snapshot is returned untouched.
        """
        async with self._lock:
            persisted = self._read_persisted()
            if persisted is not None:
                if not force and self._is_fresh(persisted):
                    if persisted != self._current:
                        self._publish(persisted)
                    return persisted
                self._current = persisted

            try:
                official = await self._bounded(self.upstream.fetch_official_commands, "command fetch")
                active = await self._bounded(self.upstream.fetch_active_model, "model fetch")
            except UpstreamUnavailable as exc:
                log_event(
                    logger,
                    "sync.fallback",
                    level=logging.WARNING,
                    upstream=self.upstream.name,
                    reason=str(exc),
                )
                return self._commit(self._fallback_snapshot())

            # Re-read after the awaits: a pin may have landed meanwhile.
            snapshot = self._merge(self._current, official, active)
            log_event(
                logger,
                "sync.completed",
                commands=len(snapshot.commands),
                model=snapshot.model.model_id,
                model_origin=snapshot.model.origin.value,
            )
            return self._commit(snapshot)

    def _fallback_snapshot(self) -> SyncSnapshot:
        base = self._current
        if base is not None:
            return base.model_copy(update={"upstream_available": False})
        local = self.local_commands.load() if self.local_commands else []
        return SyncSnapshot(
            commands=sort_commands(local),
            model=ModelSelection(model_id=None, resolved_at=self._clock()),
            fetched_at=None,
            upstream_available=False,
        )

    def _merge(
        self,
        base: SyncSnapshot | None,
        official: Iterable[CommandDescriptor],
        active: ModelSelection,
    ) -> SyncSnapshot:
        previous = {_key(cmd): cmd for cmd in base.commands} if base else {}
        merged: list[CommandDescriptor] = [_carry_version(cmd, previous) for cmd in official]
        if self.local_commands is not None:
            merged.extend(_carry_version(cmd, previous) for cmd in self.local_commands.load())
        if base is not None:
            merged.extend(base.pinned_commands())

        if base is not None and base.model.is_pinned:
            model = base.model
        else:
            model = ModelSelection(
                model_id=active.model_id,
                origin=ModelOrigin.UPSTREAM_FOLLOWED,
                resolved_at=self._clock(),
            )
        return SyncSnapshot(
            commands=sort_commands(merged),
            model=model,
            fetched_at=self._clock(),
            upstream_available=True,
        )

    def pin_command(self, descriptor: CommandDescriptor) -> SyncSnapshot:
        """Persist a sticky override produced by :meth:`CommandRegistry.pin`."""
        base = self._current or SyncSnapshot()
        commands = [c for c in base.commands if not (c.pinned and c.name == descriptor.name)]
        commands.append(descriptor)
        log_event(logger, "sync.command_pinned", command=descriptor.name, version=descriptor.version)
        return self._commit(base.model_copy(update={"commands": sort_commands(commands)}))

    def unpin_command(self, name: str) -> bool:
        """Remove a sticky override; False when ``name`` was not pinned."""
        base = self._current
        if base is None:
            return False
        name = name.lstrip("/")
        commands = [c for c in base.commands if not (c.pinned and c.name == name)]
        if len(commands) == len(base.commands):
            return False
        log_event(logger, "sync.command_unpinned", command=name)
        self._commit(base.model_copy(update={"commands": sort_commands(commands)}))
        return True

    def pin_model(self, model_id: str) -> ModelSelection:
        """Pin ``model_id`` so later syncs stop following the upstream model."""
        model_id = model_id.strip()
        if not model_id:
            raise ValueError("model id cannot be empty")
        base = self._current or SyncSnapshot()
        selection = ModelSelection(model_id=model_id, origin=ModelOrigin.LOCAL_PINNED, resolved_at=self._clock())
        log_event(logger, "sync.model_pinned", model=model_id)
        self._commit(base.model_copy(update={"model": selection}))
        return selection

    async def unpin_model(self) -> SyncSnapshot:
        """Drop a model pin and immediately follow the upstream model again.

        The pinned id is not kept as if the upstream had chosen it: until a
        sync reads the upstream's active model the model is unresolved.
        """
        base = self._current
        if base is not None and base.model.is_pinned:
            released = ModelSelection(model_id=None, origin=ModelOrigin.UPSTREAM_FOLLOWED, resolved_at=self._clock())
            self._commit(base.model_copy(update={"model": released}))
            log_event(logger, "sync.model_unpinned", model=base.model.model_id)
        return await self.synchronize(force=True)

    def start_background_resync(self) -> asyncio.Task[None]:
        """Start (at most one) task that forces a sync every re-sync interval."""
        if self._resync_task is None or self._resync_task.done():
            self._resync_task = asyncio.create_task(self._resync_loop(), name="ccpalette-resync")
        return self._resync_task

    async def stop_background_resync(self) -> None:
        task, self._resync_task = self._resync_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.resync_interval)
            try:
                await self.synchronize(force=True)
            except Exception:  # noqa: BLE001
                logger.exception("Background re-sync failed")
