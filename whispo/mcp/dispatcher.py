"""
Whispo Tool Dispatcher
----------------------
Executes local tools for the server role.

dispatch(name, arguments)
  1. resolve ``name`` in the registry          -> ToolNotFound
  2. validate arguments against inputSchema    -> InvalidArguments (handler not run)
  3. run the handler                           -> ToolExecutionFailed (cause kept)

Read-only tools run concurrently. Mutating tools take a per-tool
``asyncio.Lock`` so two calls to the same tool never interleave.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Dict, Optional

from whispo.core.config import LOCAL_NAMESPACE
from whispo.mcp.errors import ContextProtocolError, InvalidArguments, ToolExecutionFailed, ToolNotFound
from whispo.mcp.metrics import McpMetrics
from whispo.mcp.registry import ToolEntry, ToolRegistry, split_qualified
from whispo.mcp.utils import format_tool_result_text

logger = logging.getLogger("Whispo.mcp.dispatcher")


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry, max_response_chars: Optional[int] = None):
        self._registry = registry
        self._max_response_chars = max_response_chars
        self._locks_guard = threading.Lock()
        self._tool_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._tool_locks.get(name)
            if lock is None:
                lock = self._tool_locks[name] = asyncio.Lock()
            return lock

    def resolve(self, name: str) -> ToolEntry:
        namespace, tool = split_qualified(name)
        if namespace != LOCAL_NAMESPACE:
            raise ToolNotFound(tool, namespace=namespace)
        entry = self._registry.get(LOCAL_NAMESPACE, tool)
        if entry is None or entry.handler is None:
            raise ToolNotFound(tool, namespace=LOCAL_NAMESPACE)
        return entry

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Run a local tool and return the handler's raw value."""
        entry = self.resolve(name)
        arguments = {} if arguments is None else arguments
        self._registry.validate_arguments(entry, arguments)

        metrics = McpMetrics(LOCAL_NAMESPACE, entry.descriptor.name)
        try:
            if entry.mutating:
                async with self._lock_for(entry.descriptor.name):
                    value = await self._invoke(entry, arguments)
            else:
                value = await self._invoke(entry, arguments)
        except ContextProtocolError as exc:
            metrics.record_failure(exc)
            metrics.log_telemetry()
            raise
        metrics.record_success()
        metrics.log_telemetry()
        return value

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a local tool and wrap its value as an MCP ``tools/call`` result."""
        value = await self.dispatch(name, arguments)
        text = format_tool_result_text(value, name, self._max_response_chars)
        result: Dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": False}
        if isinstance(value, dict):
            result["structuredContent"] = value
        return result

    async def _invoke(self, entry: ToolEntry, arguments: Dict[str, Any]) -> Any:
        handler = entry.handler
        qualified = entry.descriptor.qualified_name
        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(arguments)
            return await asyncio.to_thread(handler, arguments)
        except InvalidArguments:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed", qualified)
            raise ToolExecutionFailed(qualified, exc) from exc
