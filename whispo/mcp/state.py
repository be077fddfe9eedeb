"""
Shared state for both protocol roles.

One ``SharedState`` is created by the runtime and injected into every
component. It owns the configuration, the tool registry, the provider
connection table, the context cache, the event channel and the server
session flags. Nothing here is module level.
"""

import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from whispo.core.config import McpConfig
from whispo.mcp.connection import ConnectionStatus, ProviderConnection
from whispo.mcp.events import EventChannel
from whispo.mcp.registry import ToolRegistry


class ConnectionTable:
    """Provider name -> live connection. Only the connection manager writes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, ProviderConnection] = {}

    def get(self, name: str) -> Optional[ProviderConnection]:
        with self._lock:
            return self._connections.get(name)

    def put(self, connection: ProviderConnection) -> None:
        with self._lock:
            self._connections[connection.name] = connection

    def pop(self, name: str) -> Optional[ProviderConnection]:
        with self._lock:
            return self._connections.pop(name, None)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def values(self) -> List[ProviderConnection]:
        with self._lock:
            return list(self._connections.values())

    def statuses(self) -> List[ConnectionStatus]:
        return [connection.status() for connection in self.values()]


class ContextCache:
    """Provider context kept only while a provider's caching hint allows it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, Mapping[str, Any]]] = {}

    def get(self, provider: str) -> Optional[Mapping[str, Any]]:
        with self._lock:
            cached = self._entries.get(provider)
            if cached is None:
                return None
            expires_at, values = cached
            if time.monotonic() >= expires_at:
                del self._entries[provider]
                return None
            return values

    def put(self, provider: str, values: Mapping[str, Any], ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[provider] = (time.monotonic() + ttl_seconds, dict(values))

    def invalidate(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._entries.clear()
            else:
                self._entries.pop(provider, None)


class SharedState:
    def __init__(
        self,
        config: Optional[McpConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        events: Optional[EventChannel] = None,
    ):
        self._lock = threading.RLock()
        self._config = (config or McpConfig()).model_copy(deep=True)
        self.registry = registry or ToolRegistry()
        self.events = events or EventChannel()
        self.connections = ConnectionTable()
        self.context_cache = ContextCache()
        self._session: Dict[str, Any] = {
            "initialized": False,
            "protocol_version": None,
            "client_info": {},
            "client_capabilities": {},
        }

    @property
    def config(self) -> McpConfig:
        """A private copy; mutate it and pass it to ``update_config``."""
        with self._lock:
            return self._config.model_copy(deep=True)

    def update_config(self, config: McpConfig) -> None:
        with self._lock:
            self._config = config.model_copy(deep=True)

    def session_state(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._session)

    def update_session(self, **values: Any) -> None:
        with self._lock:
            self._session.update(values)
