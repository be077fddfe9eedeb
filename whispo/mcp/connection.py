"""
Whispo Provider Connection
--------------------------
One spawned provider process and the JSON-RPC session running over its stdio.

Lifecycle (driven by ``ProviderConnectionManager``)::

    CONNECTING ──handshake ok──▶ READY ──EOF / heartbeat lapse──▶ DEGRADED
        │                          │                                │  ▲
        │ spawn/handshake failed   │ disconnect                     │  │ retry failed
        ▼                          ▼                                ▼  │
      CLOSED ◀──────────────── CLOSED ◀──attempts exhausted── CONNECTING

Outgoing requests are correlated with responses through ``_pending``: one
future per request id. A future is removed when its response arrives, when
the caller's timeout fires, when the caller is cancelled, or when the
transport closes; responses for ids that are no longer pending are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from whispo.core.config import ProviderConfig
from whispo.mcp.codec import (
    Method,
    Notification,
    Request,
    Response,
    decode,
    frame,
    read_frame,
)
from whispo.mcp.errors import (
    CallTimeout,
    HandshakeFailed,
    MalformedMessage,
    ProviderUnavailable,
    RemoteCallError,
)
from whispo.mcp.protocol import (
    METHOD_NOT_FOUND,
    SUPPORTED_PROTOCOL_VERSIONS,
)

logger = logging.getLogger("Whispo.mcp.connection")

# Tool catalogues can be large single lines.
_STREAM_LIMIT = 16 * 1024 * 1024


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.READY, ConnectionState.DEGRADED, ConnectionState.CLOSED},
    ConnectionState.READY: {ConnectionState.DEGRADED, ConnectionState.CLOSED},
    ConnectionState.DEGRADED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


@dataclass(frozen=True)
class ConnectionStatus:
    name: str
    state: ConnectionState
    reason: Optional[str] = None
    protocol_version: Optional[str] = None
    server_info: Dict[str, Any] = field(default_factory=dict)
    pid: Optional[int] = None
    reconnect_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "reason": self.reason,
            "protocolVersion": self.protocol_version,
            "serverInfo": dict(self.server_info),
            "pid": self.pid,
            "reconnectAttempts": self.reconnect_attempts,
        }


StateCallback = Callable[["ProviderConnection", ConnectionState, ConnectionState, Optional[str]], None]
NotificationCallback = Callable[["ProviderConnection", Notification], None]
LostCallback = Callable[["ProviderConnection", str], None]


class ProviderConnection:
    """Runtime handle for one provider. Owned by the connection manager."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        on_state_change: Optional[StateCallback] = None,
        on_notification: Optional[NotificationCallback] = None,
        on_lost: Optional[LostCallback] = None,
    ):
        self.config = config
        self.name = config.name
        self.state = ConnectionState.CONNECTING
        self.reason: Optional[str] = None
        self.failure: Optional[Exception] = None
        self.protocol_version: Optional[str] = None
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.reconnect_attempts = 0

        self._on_state_change = on_state_change
        self._on_notification = on_notification
        self._on_lost = on_lost

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._closing = False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, new_state: ConnectionState, reason: Optional[str] = None) -> bool:
        old_state = self.state
        if new_state not in _TRANSITIONS[old_state]:
            logger.warning(
                "Provider %s: invalid transition %s -> %s ignored",
                self.name,
                old_state.value,
                new_state.value,
            )
            return False
        self.state = new_state
        self.reason = None if new_state is ConnectionState.READY else reason
        if new_state is ConnectionState.READY:
            self.failure = None
        logger.info(
            "Provider %s: %s -> %s%s",
            self.name,
            old_state.value,
            new_state.value,
            f" ({reason})" if reason else "",
        )
        if self._on_state_change is not None:
            self._on_state_change(self, old_state, new_state, self.reason)
        return True

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            name=self.name,
            state=self.state,
            reason=self.reason,
            protocol_version=self.protocol_version,
            server_info=dict(self.server_info),
            pid=self._process.pid if self._process is not None else None,
            reconnect_attempts=self.reconnect_attempts,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Spawn the provider process and start reading its output."""
        env = dict(os.environ)
        env.update(self.config.env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except (OSError, ValueError) as exc:
            raise ProviderUnavailable(
                f"Failed to start provider process '{self.config.command}': {exc}",
                provider=self.name,
            ) from exc

        self._closing = False
        logger.info("Provider %s: spawned pid=%s", self.name, self._process.pid)
        self._reader_task = asyncio.create_task(
            self._read_loop(self._process), name=f"whispo-provider-{self.name}-reader"
        )
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(self._process), name=f"whispo-provider-{self.name}-stderr"
        )

    async def handshake(self, client_info: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """Run the initialize exchange and send ``notifications/initialized``."""
        params = {
            "protocolVersion": SUPPORTED_PROTOCOL_VERSIONS[0],
            "capabilities": {},
            "clientInfo": client_info,
        }
        try:
            result = await self.request(Method.INITIALIZE.value, params, timeout=timeout)
        except CallTimeout as exc:
            raise HandshakeFailed(
                f"No initialize response within {timeout:.2f}s", provider=self.name
            ) from exc
        except ProviderUnavailable as exc:
            raise HandshakeFailed(
                f"Provider closed the stream during handshake: {exc}", provider=self.name
            ) from exc
        except RemoteCallError as exc:
            raise HandshakeFailed(f"Provider rejected initialize: {exc}", provider=self.name) from exc

        if not isinstance(result, dict):
            raise HandshakeFailed("Malformed initialize result", provider=self.name)
        version = result.get("protocolVersion")
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise HandshakeFailed(
                f"Incompatible protocol version {version!r}; supported: {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}",
                provider=self.name,
            )

        self.protocol_version = version
        server_info = result.get("serverInfo")
        capabilities = result.get("capabilities")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        self.server_capabilities = capabilities if isinstance(capabilities, dict) else {}

        try:
            await self.notify(Method.INITIALIZED.value)
        except ProviderUnavailable as exc:
            raise HandshakeFailed(
                f"Provider closed the stream during handshake: {exc}", provider=self.name
            ) from exc
        return result

    async def request(self, method: str, params: Any = None, *, timeout: float) -> Any:
        """Send a request and wait for its correlated response.

        Raises:
            ProviderUnavailable: transport not open, or closed while waiting.
            CallTimeout: no response within ``timeout``; the slot is freed.
            RemoteCallError: the provider answered with a JSON-RPC error.
        """
        if not self._transport_open():
            raise ProviderUnavailable("Provider transport is not open", provider=self.name)

        msg_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._send(Request(id=msg_id, method=method, params=params))
            response: Response = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise CallTimeout(method, timeout=timeout, provider=self.name) from None
        finally:
            self._pending.pop(msg_id, None)

        if response.error is not None:
            raise RemoteCallError(response.error.code, response.error.message, data=response.error.data)
        return response.result

    async def notify(self, method: str, params: Any = None) -> None:
        await self._send(Notification(method=method, params=params))

    async def close(self, *, notify: bool, grace: float) -> None:
        """Stop heartbeat, optionally announce shutdown, then end the process."""
        self._closing = True
        if self._heartbeat_task is not None and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

        if notify and self._transport_open():
            try:
                await asyncio.wait_for(self.notify(Method.SHUTDOWN.value), grace)
            except (ProviderUnavailable, asyncio.TimeoutError):
                logger.debug("Provider %s: shutdown notification not delivered", self.name)

        await self._terminate_process(grace)

        tasks = [task for task in (self._reader_task, self._stderr_task) if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending("Provider connection closed")

    def start_heartbeat(self, interval: float, timeout: float) -> None:
        if interval <= 0:
            return
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(interval, timeout), name=f"whispo-provider-{self.name}-heartbeat"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transport_open(self) -> bool:
        return (
            self._process is not None
            and not self._closing
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def _send(self, message) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise ProviderUnavailable("Provider stdin is closed", provider=self.name)
        data = frame(message)
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ProviderUnavailable(f"Provider stdin closed: {exc}", provider=self.name) from exc

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        reason = "end of stream"
        cancelled = False
        try:
            while True:
                try:
                    raw = await read_frame(process.stdout)
                except ValueError as exc:
                    # StreamReader limit overrun: the line cannot be framed.
                    logger.warning("Provider %s: dropping oversized frame: %s", self.name, exc)
                    continue
                if raw is None:
                    break
                try:
                    message = decode(raw)
                    await self._handle_inbound(message)
                except MalformedMessage as exc:
                    logger.warning("Provider %s: %s", self.name, exc)
                except Exception:
                    logger.exception("Provider %s: dropping frame that could not be handled", self.name)
        except asyncio.CancelledError:
            cancelled = True
            raise
        except (ConnectionError, OSError) as exc:
            reason = f"transport error: {exc}"
            logger.warning("Provider %s: %s", self.name, reason)
        except Exception as exc:
            reason = f"reader failed: {type(exc).__name__}: {exc}"
            logger.exception("Provider %s: %s", self.name, reason)
        finally:
            self._fail_pending(f"Provider stream closed ({reason})")
            if not self._closing and not cancelled and self._on_lost is not None:
                self._on_lost(self, reason)

    async def _handle_inbound(self, message) -> None:
        if isinstance(message, Response):
            future = self._pending.get(message.id) if isinstance(message.id, str) else None
            if future is None or future.done():
                logger.debug("Provider %s: dropping response for unknown id %r", self.name, message.id)
                return
            future.set_result(message)
            return

        if isinstance(message, Request):
            if message.kind is Method.PING:
                reply = Response.success(message.id, {})
            else:
                reply = Response.failure(message.id, METHOD_NOT_FOUND, f"Method not found: {message.method}")
            try:
                await self._send(reply)
            except ProviderUnavailable:
                logger.debug("Provider %s: could not answer %s", self.name, message.method)
            return

        if self._on_notification is not None:
            self._on_notification(self, message)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug("[%s stderr] %s", self.name, line.decode("utf-8", errors="replace").rstrip())

    async def _heartbeat_loop(self, interval: float, timeout: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self.is_ready:
                return
            try:
                await self.request(Method.PING.value, timeout=timeout)
            except RemoteCallError as exc:
                if exc.code == METHOD_NOT_FOUND:
                    logger.info("Provider %s does not answer ping; heartbeat disabled", self.name)
                    return
            except ProviderUnavailable:
                return
            except CallTimeout:
                if not self._closing and self._on_lost is not None:
                    self._on_lost(self, f"heartbeat lapsed after {timeout:.2f}s")
                return

    async def _terminate_process(self, grace: float) -> None:
        process = self._process
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning("Provider %s did not exit within %.1fs; killing", self.name, grace)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ProviderUnavailable(reason, provider=self.name))
