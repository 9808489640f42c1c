"""Read-optimised command index built from one sync snapshot."""

from __future__ import annotations

import bisect
import logging
from typing import Callable, Iterator

from ccpalette.errors import CommandNotFound
from ccpalette.schema import CommandDescriptor, CommandSource, SyncSnapshot, normalize_command_name

logger = logging.getLogger(__name__)

PinSink = Callable[[CommandDescriptor], None]

_SOURCE_RANK = {CommandSource.OFFICIAL: 0, CommandSource.LOCAL_OVERRIDE: 1}


def suggestion_order(descriptor: CommandDescriptor) -> tuple[int, str, int]:
    """Sort key for suggestions: official before local overrides, then by name, newest version first."""
    return (_SOURCE_RANK[descriptor.source], descriptor.name, -descriptor.version)


def resolve(candidates: list[CommandDescriptor], *, shadow_local: bool = False) -> CommandDescriptor:
    """Pick the descriptor that owns a name.

    A pinned override always wins. Otherwise OFFICIAL beats an unpinned
    override unless ``shadow_local`` is set. Ties go to the higher version.
    """
    pinned = [c for c in candidates if c.pinned]
    official = [c for c in candidates if c.source is CommandSource.OFFICIAL and not c.pinned]
    local = [c for c in candidates if c.source is CommandSource.LOCAL_OVERRIDE and not c.pinned]
    if shadow_local:
        order = (pinned, local, official)
    else:
        order = (pinned, official, local)
    for group in order:
        if group:
            return max(group, key=lambda c: c.version)
    raise ValueError("no candidates to resolve")


class CommandRegistry:
    """Unique-name view of a snapshot's commands.

    Instances are never modified after construction; a new snapshot means a
    new registry. ``pin`` produces the sticky override and hands it to the
    pin sink (the sync engine), which persists it and publishes a new registry.
    """

    def __init__(
        self,
        snapshot: SyncSnapshot | None = None,
        *,
        shadow_local: bool = False,
        pin_sink: PinSink | None = None,
    ) -> None:
        self.snapshot = snapshot or SyncSnapshot()
        self._pin_sink = pin_sink
        grouped: dict[str, list[CommandDescriptor]] = {}
        for descriptor in self.snapshot.commands:
            grouped.setdefault(descriptor.name, []).append(descriptor)
        self._by_name = {
            name: resolve(candidates, shadow_local=shadow_local) for name, candidates in grouped.items()
        }
        self._sorted_names = sorted(self._by_name)

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_command_name(name) in self._by_name

    def __iter__(self) -> Iterator[CommandDescriptor]:
        return iter(self.prefix_search(""))

    def names(self) -> list[str]:
        return [descriptor.name for descriptor in self]

    def lookup(self, name: str) -> CommandDescriptor:
        """Exact match after stripping the leading slash; raises CommandNotFound."""
        key = normalize_command_name(name)
        try:
            return self._by_name[key]
        except KeyError:
            raise CommandNotFound(key) from None

    def prefix_search(self, prefix: str) -> list[CommandDescriptor]:
        """Commands whose name starts with ``prefix`` (leading '/' ignored).

        Ordered OFFICIAL before LOCAL_OVERRIDE, then by name, then newest
        version first.
        """
        key = normalize_command_name(prefix)
        start = bisect.bisect_left(self._sorted_names, key)
        matches: list[CommandDescriptor] = []
        for name in self._sorted_names[start:]:
            if not name.startswith(key):
                break
            matches.append(self._by_name[name])
        return sorted(matches, key=suggestion_order)

    def pin(self, name: str) -> CommandDescriptor:
        """Turn the resolved ``name`` into a sticky local override."""
        current = self.lookup(name)
        pinned = current.model_copy(
            update={
                "source": CommandSource.LOCAL_OVERRIDE,
                "pinned": True,
                "scope": "pinned" if current.scope == "upstream" else current.scope,
                "version": current.version + 1,
            }
        )
        logger.info("Pinning /%s at version %d", pinned.name, pinned.version)
        if self._pin_sink is not None:
            self._pin_sink(pinned)
        return pinned
