"""Pydantic records shared by the sync engine, registry and session view.

Everything here is frozen: snapshots and turns are replaced, never edited.
The JSON form of :class:`SyncSnapshot` is what the config store persists.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SNAPSHOT_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_command_name(name: str) -> str:
    """Strip whitespace and the leading slash; names are otherwise case-sensitive."""
    return name.strip().lstrip("/")


class CommandSource(StrEnum):
    OFFICIAL = "official"
    LOCAL_OVERRIDE = "local_override"


class ModelOrigin(StrEnum):
    UPSTREAM_FOLLOWED = "upstream_followed"
    LOCAL_PINNED = "local_pinned"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class CommandDescriptor(BaseModel):
    """One slash command as known to the palette."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1, description="Command name without the leading '/'.")
    summary: str = ""
    source: CommandSource = CommandSource.OFFICIAL
    version: int = Field(1, ge=1)
    pinned: bool = False
    hint: str = ""
    accepts_arguments: bool = False
    namespace: str | None = None
    scope: Literal["upstream", "project", "user", "pinned"] = "upstream"
    file_path: str | None = None
    content: str = ""
    allowed_tools: tuple[str, ...] = ()
    # Body runs shell snippets (!`...`) or pulls in files (@path).
    has_bash_commands: bool = False
    has_file_references: bool = False

    @field_validator("name")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        name = normalize_command_name(value)
        if not name or any(ch.isspace() for ch in name):
            raise ValueError(f"invalid command name: {value!r}")
        return name

    @property
    def full_command(self) -> str:
        return f"/{self.name}"

    def same_payload(self, other: "CommandDescriptor") -> bool:
        """True when only bookkeeping fields (version, pin) differ."""
        return (
            self.summary == other.summary
            and self.hint == other.hint
            and self.content == other.content
            and self.accepts_arguments == other.accepts_arguments
            and self.allowed_tools == other.allowed_tools
        )


class ModelSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    model_id: str | None = None
    origin: ModelOrigin = ModelOrigin.UPSTREAM_FOLLOWED
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pinned(self) -> bool:
        return self.origin is ModelOrigin.LOCAL_PINNED

    @property
    def is_resolved(self) -> bool:
        return self.model_id is not None


class SyncSnapshot(BaseModel):
    """Reconciled local and upstream configuration at one point in time."""

    model_config = ConfigDict(frozen=True)

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    commands: tuple[CommandDescriptor, ...] = ()
    model: ModelSelection = Field(default_factory=ModelSelection)
    fetched_at: datetime | None = None
    upstream_available: bool = False

    def age_seconds(self, now: datetime | None = None) -> float | None:
        if self.fetched_at is None:
            return None
        return ((now or utcnow()) - self.fetched_at).total_seconds()

    def pinned_commands(self) -> list[CommandDescriptor]:
        return [cmd for cmd in self.commands if cmd.pinned]


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    is_error: bool = False


def sort_commands(commands: list[CommandDescriptor]) -> tuple[CommandDescriptor, ...]:
    """Deterministic order used for persistence (OFFICIAL first, name, newest version)."""
    rank = {CommandSource.OFFICIAL: 0, CommandSource.LOCAL_OVERRIDE: 1}
    return tuple(sorted(commands, key=lambda cmd: (rank[cmd.source], cmd.name, -cmd.version)))
