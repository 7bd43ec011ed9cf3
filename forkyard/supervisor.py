"""
FORKYARD Process Supervisor

Owns one detached agent server per name. Each server gets a free
local port, a background drain of its stderr and an exit watcher that
drops the table entry as soon as the OS process is gone.

Lifecycle per name:
  Absent -> Starting -> Ready -> Sessioned -> Exited

Liveness is the OS process's, not the logical session's.
"""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

import httpx
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, stop_after_delay, wait_fixed

from forkyard.config_loader import SupervisorConfig
from forkyard.errors import (
    ProcessDiedError,
    SessionCreationError,
    StartupTimeoutError,
)

NO_REPLY = "No messages"

Spawner = Callable[..., Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Reply shapes
# ---------------------------------------------------------------------------

class MessagePart(BaseModel):
    type: str | None = None
    text: Any = None
    value: Any = None

    def content(self) -> str:
        for candidate in (self.text, self.value):
            if isinstance(candidate, str) and candidate:
                return candidate
        return ""


class Message(BaseModel):
    info: dict[str, Any] = Field(default_factory=dict)
    parts: list[MessagePart] = Field(default_factory=list)

    @field_validator("parts", mode="before")
    @classmethod
    def _only_objects(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [part for part in value if isinstance(part, dict)]


class MessageList(BaseModel):
    kind: Literal["list"] = "list"
    messages: list[Message]


class DataEnvelope(BaseModel):
    kind: Literal["envelope"] = "envelope"
    data: list[Message]


class SingleMessage(BaseModel):
    kind: Literal["single"] = "single"
    message: Message


class EmptyReply(BaseModel):
    kind: Literal["empty"] = "empty"


ReplyShape = Annotated[
    Union[MessageList, DataEnvelope, SingleMessage, EmptyReply],
    Field(discriminator="kind"),
]
_reply_adapter: TypeAdapter[ReplyShape] = TypeAdapter(ReplyShape)


def _messages(rows: list) -> list[dict]:
    return [row for row in rows if isinstance(row, dict)]


def classify_reply(payload: Any) -> ReplyShape:
    """Tag a raw control-API payload with the shape it arrived in."""
    if isinstance(payload, list):
        return _reply_adapter.validate_python({"kind": "list", "messages": _messages(payload)})
    if isinstance(payload, dict):
        if isinstance(payload.get("data"), list):
            return _reply_adapter.validate_python({"kind": "envelope", "data": _messages(payload["data"])})
        if isinstance(payload.get("parts"), list):
            message = {"info": payload.get("info") or {}, "parts": payload["parts"]}
            return _reply_adapter.validate_python({"kind": "single", "message": message})
    return EmptyReply()


def extract_reply_text(shape: ReplyShape) -> str | None:
    """Join every textual part of a reply; None when there is no text at all."""
    if isinstance(shape, MessageList):
        messages = shape.messages
    elif isinstance(shape, DataEnvelope):
        messages = shape.data
    elif isinstance(shape, SingleMessage):
        messages = [shape.message]
    elif isinstance(shape, EmptyReply):
        messages = []
    else:
        raise TypeError(f"Unknown reply shape: {type(shape).__name__}")

    texts = [part.content() for message in messages for part in message.parts]
    text = "\n".join(t for t in texts if t).strip()
    return text or None


# ---------------------------------------------------------------------------
# Process table
# ---------------------------------------------------------------------------

@dataclass
class RemoteAgentProcess:
    name: str
    port: int
    process: Any
    url: str
    cwd: str | None = None
    session_id: str | None = None
    input_buffer: str | None = None
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class AgentSummary(BaseModel):
    name: str
    port: int
    url: str
    session_id: str | None = None
    active: bool


def free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


async def _spawn_process(*cmd: str, cwd: str | None = None) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


class ProcessSupervisor:
    """
    Table of named agent server processes.

    The spawner, port allocator, HTTP transport and sleep function are
    injectable so the bounded waits can run without real processes or delays.
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        spawn: Spawner = _spawn_process,
        allocate_port: Callable[[str], int] = free_port,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.config = config or SupervisorConfig()
        self._spawn = spawn
        self._allocate_port = allocate_port
        self._transport = transport
        self._sleep = sleep
        self._processes: dict[str, RemoteAgentProcess] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._cwds: dict[str, str | None] = {}

    # -- helpers ------------------------------------------------------------

    def _client(self, remote: RemoteAgentProcess) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=remote.url,
            transport=self._transport,
            timeout=self.config.request_timeout,
        )

    def _retrying(
        self,
        attempts: int,
        interval: float,
        done: Callable[[Any], bool],
        give_up: Any,
        within: float | None = None,
    ) -> AsyncRetrying:
        stop = stop_after_attempt(attempts)
        if within is not None:
            stop = stop | stop_after_delay(within)
        return AsyncRetrying(
            stop=stop,
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda outcome: not done(outcome)),
            retry_error_callback=lambda state: give_up,
            sleep=self._sleep,
        )

    async def _drain(self, name: str, stream: Any) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug(f"[SUPERVISOR] {name}: {line.decode('utf-8', errors='replace').rstrip()}")

    async def _watch_exit(self, name: str, process: Any) -> None:
        code = await process.wait()
        current = self._processes.get(name)
        if current is not None and current.process is process:
            del self._processes[name]
            logger.info(f"[SUPERVISOR] {name} exited ({code}); removed from table")

    def _kill(self, remote: RemoteAgentProcess) -> None:
        if remote.alive:
            try:
                remote.process.kill()
            except ProcessLookupError:
                pass

    async def _probe_ready(self, remote: RemoteAgentProcess) -> bool:
        if not remote.alive:
            raise ProcessDiedError("Agent server exited during startup", name=remote.name, port=remote.port)
        try:
            async with self._client(remote) as client:
                response = await client.get("/session")
                return response.is_success
        except httpx.HTTPError:
            return False

    # -- lifecycle ----------------------------------------------------------

    async def ensure_server(self, name: str, cwd: str | None = None) -> RemoteAgentProcess:
        # Concurrent callers for one name share a single start-up
        pending = self._starting.get(name)
        if pending is None:
            existing = self._processes.get(name)
            if existing is not None and existing.alive:
                return existing
            if existing is not None:
                del self._processes[name]
            if cwd is None:
                cwd = self._cwds.get(name)
            pending = asyncio.ensure_future(self._start(name, cwd))
            self._starting[name] = pending
            pending.add_done_callback(lambda _: self._starting.pop(name, None))
        return await asyncio.shield(pending)

    async def _start(self, name: str, cwd: str | None) -> RemoteAgentProcess:
        cfg = self.config
        port = self._allocate_port(cfg.host)
        cmd = [part.format(port=port, host=cfg.host) for part in cfg.command]
        process = await self._spawn(*cmd, cwd=cwd)
        remote = RemoteAgentProcess(name=name, port=port, process=process, url=f"http://{cfg.host}:{port}", cwd=cwd)
        self._cwds[name] = cwd
        remote.tasks.append(asyncio.ensure_future(self._drain(name, getattr(process, "stderr", None))))
        remote.tasks.append(asyncio.ensure_future(self._watch_exit(name, process)))
        self._processes[name] = remote
        logger.info(f"[SUPERVISOR] Spawned {name} on port {port}")

        probing = self._retrying(
            cfg.ready_attempts, cfg.ready_interval, done=bool, give_up=False, within=cfg.startup_timeout
        )
        try:
            # Bounded by wall-clock time as well as by attempts
            ready = await asyncio.wait_for(probing(self._probe_ready, remote), timeout=cfg.startup_timeout)
        except asyncio.TimeoutError:
            ready = False
        except ProcessDiedError:
            self._discard(name, remote)
            raise
        if not ready:
            logger.error(f"[SUPERVISOR] {name} did not become ready within {cfg.startup_timeout}s")
            self._discard(name, remote)
            raise StartupTimeoutError("Agent server did not get ready in time", name=name, port=port)

        logger.info(f"[SUPERVISOR] {name} ready at {remote.url}")
        return remote

    def _discard(self, name: str, remote: RemoteAgentProcess) -> None:
        self._kill(remote)
        if self._processes.get(name) is remote:
            del self._processes[name]

    async def ensure_session(self, name: str, cwd: str | None = None) -> RemoteAgentProcess:
        remote = await self.ensure_server(name, cwd)
        if remote.session_id:
            return remote

        async with self._client(remote) as client:
            try:
                response = await client.post("/session", json={"title": f"forkyard: {name}"})
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise SessionCreationError(f"Failed to create session: {e}", name=name, port=remote.port) from e

        session_id = _session_id(payload)
        if not session_id:
            raise SessionCreationError("Failed to create session: no id returned", name=name, port=remote.port)
        remote.session_id = session_id
        logger.info(f"[SUPERVISOR] {name} session {session_id}")
        return remote

    async def run_prompt(self, name: str, text: str, agent: str | None = None) -> str:
        """Send ``text`` and wait (bounded) for a textual reply; NO_REPLY on timeout."""
        remote = await self.ensure_session(name)
        body = {
            "agent": agent or self.config.agent_profile,
            "parts": [{"type": "text", "text": text}],
        }

        async with self._client(remote) as client:
            try:
                response = await client.post(f"/session/{remote.session_id}/message", json=body)
                response.raise_for_status()
                payload = response.json() if response.content else None
            except (httpx.HTTPError, ValueError):
                if not remote.alive:
                    raise ProcessDiedError(
                        "Remote process died while prompting",
                        name=name, port=remote.port, session_id=remote.session_id,
                    ) from None
                raise

            immediate = extract_reply_text(classify_reply(payload))
            if immediate:
                return immediate

            async def poll() -> str | None:
                if not remote.alive:
                    raise ProcessDiedError(
                        "Remote process died while waiting for response",
                        name=name, port=remote.port, session_id=remote.session_id,
                    )
                try:
                    res = await client.get(f"/session/{remote.session_id}/message")
                    res.raise_for_status()
                    return extract_reply_text(classify_reply(res.json()))
                except (httpx.HTTPError, ValueError):
                    return None

            await self._sleep(self.config.poll_interval)
            reply = await self._retrying(
                self.config.poll_attempts, self.config.poll_interval, done=bool, give_up=None
            )(poll)
        return reply or NO_REPLY

    # -- input buffer -------------------------------------------------------

    async def queue_input(self, name: str, chunk: str) -> str:
        remote = await self.ensure_server(name)
        remote.input_buffer = f"{remote.input_buffer or ''}{chunk}"
        return remote.input_buffer

    async def flush_input(self, name: str) -> str:
        remote = await self.ensure_server(name)
        text = remote.input_buffer or ""
        remote.input_buffer = None
        return text

    # -- read-only views ----------------------------------------------------

    def _summary(self, remote: RemoteAgentProcess) -> AgentSummary:
        return AgentSummary(
            name=remote.name,
            port=remote.port,
            url=remote.url,
            session_id=remote.session_id,
            active=remote.alive,
        )

    def describe(self, name: str) -> AgentSummary | None:
        remote = self._processes.get(name)
        return self._summary(remote) if remote else None

    def list(self) -> list[AgentSummary]:
        return [self._summary(remote) for remote in self._processes.values()]

    # -- teardown -----------------------------------------------------------

    async def shutdown(self, name: str) -> bool:
        remote = self._processes.pop(name, None)
        if remote is None:
            return False
        self._kill(remote)
        logger.info(f"[SUPERVISOR] Shut down {name} (port {remote.port})")
        return True

    async def dispose(self) -> None:
        """Kill every supervised process and cancel background tasks."""
        remotes = list(self._processes.values())
        self._processes.clear()
        self._cwds.clear()
        for task in self._starting.values():
            task.cancel()
        for remote in remotes:
            self._kill(remote)
            for task in remote.tasks:
                task.cancel()
        if remotes:
            logger.info(f"[SUPERVISOR] Disposed {len(remotes)} process(es)")


def _session_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    candidates = [
        payload.get("id"),
        (payload.get("data") or {}).get("id") if isinstance(payload.get("data"), dict) else None,
        (payload.get("session") or {}).get("id") if isinstance(payload.get("session"), dict) else None,
    ]
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("session"), dict):
        candidates.append(data["session"].get("id"))
    return next((c for c in candidates if isinstance(c, str) and c), None)
