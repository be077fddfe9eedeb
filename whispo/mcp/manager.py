"""
Whispo Provider Connection Manager
----------------------------------
Owns every provider connection: spawning, handshake, liveness, reconnect
backoff and teardown. All writes to the connection table go through here, and
each provider name is guarded by its own ``asyncio.Lock`` so that at most one
live connection exists per name.

Reconnect policy
    A READY connection that loses its transport (EOF, transport error, lapsed
    heartbeat) becomes DEGRADED, its registry entries are tagged stale, and a
    background task retries ``timing.reconnect_max_attempts`` times with
    delays of ``base * 2**attempt`` capped at ``reconnect_max_delay_seconds``.
    When the attempts run out the connection is CLOSED, its tools are pruned,
    and only ``connect`` / ``apply_config`` brings it back.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from whispo.core.config import McpConfig, ProviderConfig, TimingConfig
from whispo.mcp.codec import Method, Notification
from whispo.mcp.connection import ConnectionState, ConnectionStatus, ProviderConnection
from whispo.mcp.errors import ContextProtocolError, HandshakeFailed, ProviderUnavailable
from whispo.mcp.events import EventKind
from whispo.mcp.protocol import CLIENT_NAME
from whispo.mcp.state import SharedState
from whispo.version import __version__

logger = logging.getLogger("Whispo.mcp.manager")


class ProviderConnectionManager:
    def __init__(self, state: SharedState):
        self._state = state
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}

    @property
    def client_info(self) -> Dict[str, Any]:
        return {"name": CLIENT_NAME, "version": __version__}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self, config: ProviderConfig) -> ConnectionStatus:
        """Spawn and handshake ``config``, replacing any connection with its name.

        Raises:
            ProviderUnavailable: the process could not be started.
            HandshakeFailed: the initialize exchange failed.
        In both cases the connection stays in the table as CLOSED with the reason.
        """
        async with self._name_lock(config.name):
            self._cancel_reconnect(config.name)
            existing = self._state.connections.get(config.name)
            if existing is not None:
                logger.info("Replacing connection for provider %s", config.name)
                await self._teardown(existing, reason="reconfigured")

            connection = ProviderConnection(
                config,
                on_state_change=self._on_state_change,
                on_notification=self._on_notification,
                on_lost=self._on_lost,
            )
            self._state.connections.put(connection)
            try:
                await self._establish(connection, self._timing())
            except (ProviderUnavailable, HandshakeFailed) as exc:
                connection.failure = exc
                connection.transition(ConnectionState.CLOSED, str(exc))
                logger.warning("Provider %s failed to connect: %s", config.name, exc)
                raise
            return connection.status()

    async def disconnect(self, name: str) -> bool:
        """Best-effort shutdown notice, terminate the process, prune its tools."""
        async with self._name_lock(name):
            self._cancel_reconnect(name)
            connection = self._state.connections.pop(name)
            if connection is None:
                return False
            await self._teardown(connection, reason="disconnected")
            return True

    async def apply_config(self, config: McpConfig) -> Dict[str, ContextProtocolError]:
        """Reconcile running connections with ``config``; returns failures by name."""
        self._state.update_config(config)
        desired = {provider.name: provider for provider in config.active_providers()}

        for name in self._state.connections.names():
            if name not in desired:
                await self.disconnect(name)

        failures: Dict[str, ContextProtocolError] = {}

        async def _ensure(provider: ProviderConfig) -> None:
            existing = self._state.connections.get(provider.name)
            if (
                existing is not None
                and existing.config == provider
                and existing.state is not ConnectionState.CLOSED
            ):
                return
            try:
                await self.connect(provider)
            except (ProviderUnavailable, HandshakeFailed) as exc:
                failures[provider.name] = exc

        await asyncio.gather(*(_ensure(provider) for provider in desired.values()))
        if failures:
            logger.warning(
                "%d of %d providers failed to connect: %s",
                len(failures),
                len(desired),
                ", ".join(sorted(failures)),
            )
        return failures

    async def request(
        self,
        name: str,
        method: str,
        params: Any = None,
        *,
        timeout: float,
    ) -> Any:
        """Route a request to a READY provider; fails fast otherwise."""
        connection = self._state.connections.get(name)
        if connection is None:
            raise ProviderUnavailable("Unknown provider", provider=name)
        if not connection.is_ready:
            raise ProviderUnavailable(f"Provider is {connection.state.value}", provider=name)
        return await connection.request(method, params, timeout=timeout)

    def statuses(self) -> List[ConnectionStatus]:
        return self._state.connections.statuses()

    def status(self, name: str) -> Optional[ConnectionStatus]:
        connection = self._state.connections.get(name)
        return connection.status() if connection is not None else None

    def ready_providers(self) -> List[str]:
        return [c.name for c in self._state.connections.values() if c.is_ready]

    def failures(self) -> Dict[str, Exception]:
        """Recorded failures of CLOSED connections, by provider name."""
        return {
            c.name: c.failure
            for c in self._state.connections.values()
            if c.state is ConnectionState.CLOSED and c.failure is not None
        }

    def provider_timeout(self, name: str) -> float:
        connection = self._state.connections.get(name)
        if connection is not None and connection.config.call_timeout_seconds:
            return connection.config.call_timeout_seconds
        return self._timing().call_timeout_seconds

    async def shutdown(self) -> None:
        for task in list(self._reconnect_tasks.values()):
            task.cancel()
        self._reconnect_tasks.clear()
        names = self._state.connections.names()
        await asyncio.gather(*(self.disconnect(name) for name in names), return_exceptions=True)
        logger.info("Provider connections shut down (%d)", len(names))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _timing(self) -> TimingConfig:
        return self._state.config.timing

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        """Serialize work on one provider name; the lock is dropped with its last user."""
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name] and self._state.connections.get(name) is None:
                del self._lock_users[name]
                del self._locks[name]

    async def _establish(self, connection: ProviderConnection, timing: TimingConfig) -> None:
        await connection.open()
        try:
            await connection.handshake(self.client_info, timeout=timing.handshake_timeout_seconds)
        except HandshakeFailed:
            await connection.close(notify=False, grace=timing.shutdown_grace_seconds)
            raise
        connection.transition(ConnectionState.READY)
        connection.start_heartbeat(timing.heartbeat_interval_seconds, timing.heartbeat_timeout_seconds)

    async def _teardown(self, connection: ProviderConnection, reason: str) -> None:
        await connection.close(notify=True, grace=self._timing().shutdown_grace_seconds)
        if connection.state is not ConnectionState.CLOSED:
            connection.transition(ConnectionState.CLOSED, reason)
        self._state.registry.prune_provider(connection.name)
        self._state.context_cache.invalidate(connection.name)

    def _cancel_reconnect(self, name: str) -> None:
        task = self._reconnect_tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _on_state_change(
        self,
        connection: ProviderConnection,
        old_state: ConnectionState,
        new_state: ConnectionState,
        reason: Optional[str],
    ) -> None:
        self._state.events.emit(
            EventKind.PROVIDER_STATE,
            provider=connection.name,
            previous=old_state.value,
            state=new_state.value,
            reason=reason,
        )

    def _on_notification(self, connection: ProviderConnection, notification: Notification) -> None:
        if notification.kind is Method.TOOLS_LIST_CHANGED:
            self._state.registry.mark_stale(connection.name)
            self._state.events.emit(EventKind.TOOLS_CHANGED, provider=connection.name)
            return
        logger.debug("Provider %s notification %s ignored", connection.name, notification.method)

    def _on_lost(self, connection: ProviderConnection, reason: str) -> None:
        if self._state.connections.get(connection.name) is not connection:
            return
        if not connection.is_ready:
            return
        connection.transition(ConnectionState.DEGRADED, reason)
        self._state.registry.mark_stale(connection.name)
        self._state.context_cache.invalidate(connection.name)
        self._reconnect_tasks[connection.name] = asyncio.create_task(
            self._reconnect_loop(connection), name=f"whispo-provider-{connection.name}-reconnect"
        )

    async def _reconnect_loop(self, connection: ProviderConnection) -> None:
        name = connection.name
        timing = self._timing()
        try:
            for attempt in range(timing.reconnect_max_attempts):
                delay = timing.backoff_delay(attempt)
                logger.info(
                    "Reconnecting provider %s in %.2fs (attempt %d/%d)",
                    name,
                    delay,
                    attempt + 1,
                    timing.reconnect_max_attempts,
                )
                await asyncio.sleep(delay)
                async with self._name_lock(name):
                    if self._state.connections.get(name) is not connection:
                        return
                    await connection.close(notify=False, grace=timing.shutdown_grace_seconds)
                    connection.reconnect_attempts = attempt + 1
                    connection.transition(ConnectionState.CONNECTING, f"reconnect attempt {attempt + 1}")
                    try:
                        await self._establish(connection, timing)
                    except (ProviderUnavailable, HandshakeFailed) as exc:
                        logger.warning("Provider %s reconnect attempt %d failed: %s", name, attempt + 1, exc)
                        connection.failure = exc
                        connection.transition(ConnectionState.DEGRADED, str(exc))
                        continue
                    connection.reconnect_attempts = 0
                    logger.info("Provider %s reconnected", name)
                    return

            async with self._name_lock(name):
                if self._state.connections.get(name) is not connection:
                    return
                await connection.close(notify=False, grace=timing.shutdown_grace_seconds)
                if connection.failure is None:
                    connection.failure = ProviderUnavailable(
                        f"Connection lost ({connection.reason})", provider=name
                    )
                connection.transition(
                    ConnectionState.CLOSED,
                    f"reconnect attempts exhausted after {timing.reconnect_max_attempts}: {connection.reason}",
                )
                self._state.registry.prune_provider(name)
        finally:
            if self._reconnect_tasks.get(name) is asyncio.current_task():
                del self._reconnect_tasks[name]
