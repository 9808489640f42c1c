"""Upstream adapter that talks to the CC client over the Agent Client Protocol.

The upstream client is launched as an ACP agent subprocess. Its official
command list arrives as an ``available_commands_update`` notification after
the session is created, and its active model comes from the session's model
state. Dispatched commands are sent as ``/name args`` prompts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import Any, Iterable

import asyncio.subprocess as aio_subprocess
from acp import PROTOCOL_VERSION, Client, RequestError, RequestPermissionResponse, SessionNotification, text_block
from acp.core import connect_to_agent
from acp.schema import (
    AgentMessageChunk,
    AllowedOutcome,
    AvailableCommandsUpdate,
    ClientCapabilities,
    DeniedOutcome,
    FileSystemCapability,
    Implementation,
    TextContentBlock,
)

from ccpalette.errors import ExecutionFailure, UpstreamUnavailable
from ccpalette.schema import CommandDescriptor, ModelOrigin, ModelSelection, utcnow
from ccpalette.upstream import CommandExecutor, UpstreamClientAdapter, official_descriptor

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_WAIT = 3.0
_FAILED_STOP_REASONS = {"refusal", "cancelled"}


def _session_model(session: Any) -> str | None:
    current = getattr(getattr(session, "models", None), "current_model_id", None)
    return str(current) if current else None


def _command_hint(cmd: Any) -> str:
    command_input = getattr(cmd, "input", None)
    if command_input is None:
        return ""
    root = getattr(command_input, "root", command_input)
    return getattr(root, "hint", "") or ""


class UpstreamACPClient(Client):
    """Client side of the ACP connection: records commands and reply text."""

    def __init__(self) -> None:
        self.commands: frozenset[CommandDescriptor] | None = None
        self.commands_ready = asyncio.Event()
        self._reply: list[str] = []

    def begin_reply(self) -> None:
        self._reply = []

    def take_reply(self) -> str:
        text, self._reply = "".join(self._reply), []
        return text

    async def request_permission(self, options, session_id: str, tool_call: Any, **_: Any) -> RequestPermissionResponse:
        allow = next((opt for opt in options or [] if getattr(opt, "kind", "") == "allow_once"), None)
        logger.info(
            "permission.request session=%s tool=%s granted=%s",
            session_id,
            getattr(tool_call, "title", "") or getattr(tool_call, "tool_call_id", ""),
            allow is not None,
        )
        if allow is None:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
        return RequestPermissionResponse(outcome=AllowedOutcome(option_id=allow.option_id, outcome="selected"))

    async def session_update(self, session_id: str, update: SessionNotification | Any, **_: Any) -> None:
        if isinstance(update, SessionNotification):
            update = update.update
        if isinstance(update, AvailableCommandsUpdate):
            self.commands = frozenset(
                official_descriptor(cmd.name, cmd.description, _command_hint(cmd))
                for cmd in update.available_commands or []
            )
            logger.debug("Upstream advertised %d commands", len(self.commands))
            self.commands_ready.set()
            return
        if isinstance(update, AgentMessageChunk) and isinstance(update.content, TextContentBlock):
            self._reply.append(update.content.text)

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        return None

    def on_connect(self, *_: Any, **__: Any) -> None:
        return None

    async def write_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/write_text_file")

    async def read_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/read_text_file")

    async def create_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/create")


class ACPUpstream(UpstreamClientAdapter, CommandExecutor):
    name = "acp"

    def __init__(
        self,
        program: str,
        args: Iterable[str] = (),
        *,
        cwd: Path | None = None,
        command_wait: float = DEFAULT_COMMAND_WAIT,
    ) -> None:
        self.program = program
        self.args = list(args)
        self.cwd = cwd or Path.cwd()
        self.command_wait = command_wait
        self.client = UpstreamACPClient()
        self._proc: asyncio.subprocess.Process | None = None
        self._conn: Any = None
        self._session_id: str | None = None
        self._model_id: str | None = None
        self._model_fresh = False
        self._start_lock = asyncio.Lock()

    async def _ensure_started(self) -> None:
        async with self._start_lock:
            if self._session_id is not None:
                return
            try:
                await self._start()
            except (OSError, RequestError, ConnectionError) as exc:
                await self.close()
                raise UpstreamUnavailable(f"cannot start {self.program}: {exc}", source=self.name) from exc
            except BaseException:
                # Cancelled mid-start (sync timeout): do not leave the child running.
                await self.close()
                raise

    async def _start(self) -> None:
        spawn_program, spawn_args = self.program, self.args
        program_path = Path(self.program)
        if program_path.suffix == ".py" and program_path.exists() and not os.access(program_path, os.X_OK):
            spawn_program, spawn_args = sys.executable, [str(program_path), *self.args]

        self._proc = await asyncio.create_subprocess_exec(
            spawn_program,
            *spawn_args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
        )
        if self._proc.stdin is None or self._proc.stdout is None:
            raise ConnectionError("upstream process does not expose stdio pipes")

        self._conn = connect_to_agent(self.client, self._proc.stdin, self._proc.stdout)
        init_resp = await self._conn.initialize(
            protocol_version=PROTOCOL_VERSION,
            client_capabilities=ClientCapabilities(
                fs=FileSystemCapability(read_text_file=False, write_text_file=False),
                terminal=False,
            ),
            client_info=Implementation(name="ccpalette", title="CC Palette", version="0.1.0"),
        )
        if init_resp.protocol_version != PROTOCOL_VERSION:
            raise ConnectionError(f"incompatible ACP protocol version {init_resp.protocol_version}")

        session = await self._conn.new_session(cwd=str(self.cwd), mcp_servers=[])
        self._model_id = _session_model(session)
        self._model_fresh = True
        self._session_id = session.session_id
        logger.info("Connected to upstream %s session=%s model=%s", self.program, self._session_id, self._model_id)

    async def fetch_official_commands(self) -> frozenset[CommandDescriptor]:
        await self._ensure_started()
        if self.client.commands is None:
            try:
                await asyncio.wait_for(self.client.commands_ready.wait(), timeout=self.command_wait)
            except asyncio.TimeoutError as exc:
                raise UpstreamUnavailable("upstream did not advertise its commands", source=self.name) from exc
        return self.client.commands or frozenset()

    async def fetch_active_model(self) -> ModelSelection:
        """Report the upstream's active model.

        The value read at start-up (or recorded from a ``/model`` dispatch) is
        used once; every later call asks the agent again by opening a fresh
        session, which also re-sends its command list.
        """
        await self._ensure_started()
        if self._model_fresh:
            self._model_fresh = False
        else:
            await self._refresh_model()
        if not self._model_id:
            raise UpstreamUnavailable("upstream session reports no active model", source=self.name)
        return ModelSelection(model_id=self._model_id, origin=ModelOrigin.UPSTREAM_FOLLOWED, resolved_at=utcnow())

    async def execute(self, name: str, argument: str) -> str:
        try:
            await self._ensure_started()
        except UpstreamUnavailable as exc:
            raise ExecutionFailure(name, str(exc)) from exc

        text = f"/{name} {argument}".strip() if name else argument
        self.client.begin_reply()
        try:
            response = await self._conn.prompt(prompt=[text_block(text)], session_id=self._session_id)
        except (RequestError, OSError, ConnectionError) as exc:
            raise ExecutionFailure(name, str(exc)) from exc
        stop_reason = getattr(response, "stop_reason", None)
        reply = self.client.take_reply()
        if stop_reason in _FAILED_STOP_REASONS:
            raise ExecutionFailure(name, reply or f"upstream stopped ({stop_reason})")
        if name == "model" and argument.strip():
            self._model_id = argument.strip()
            self._model_fresh = True
        return reply or "(no output)"

    async def _refresh_model(self) -> None:
        try:
            session = await self._conn.new_session(cwd=str(self.cwd), mcp_servers=[])
        except (RequestError, OSError, ConnectionError) as exc:
            raise UpstreamUnavailable(f"cannot read the active model: {exc}", source=self.name) from exc
        self._model_id = _session_model(session)
        logger.debug("Upstream model re-read: %s", self._model_id)

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        proc, self._proc = self._proc, None
        self._session_id = None
        if conn is not None:
            with contextlib.suppress(Exception):
                await conn.close()
        if proc is not None and proc.returncode is None:
            proc.terminate()
            with contextlib.suppress(ProcessLookupError):
                await proc.wait()
