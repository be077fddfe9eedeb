"""
Whispo Client Invoker
---------------------
Tool discovery and tool calls against connected providers.

The invoker never holds a connection; it asks the connection manager to route
by provider name. Discovery results are written into the shared registry one
provider at a time with ``ToolRegistry.replace_provider_tools``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from whispo.core.config import LOCAL_NAMESPACE
from whispo.mcp.codec import Method
from whispo.mcp.connection import ConnectionState
from whispo.mcp.errors import (
    ContextProtocolError,
    InvalidArguments,
    ProviderUnavailable,
    RemoteCallError,
    ToolExecutionFailed,
    ToolNotFound,
)
from whispo.mcp.manager import ProviderConnectionManager
from whispo.mcp.metrics import McpMetrics
from whispo.mcp.protocol import INVALID_PARAMS, METHOD_NOT_FOUND
from whispo.mcp.registry import ToolDescriptor, ToolEntry, ToolRegistry

logger = logging.getLogger("Whispo.mcp.invoker")

# Guards against a provider that keeps returning a cursor.
_MAX_LIST_PAGES = 50


@dataclass
class ToolListing:
    """Result of ``list_tools``: fresh remote tools plus what went wrong."""

    tools: List[ToolDescriptor] = field(default_factory=list)
    failures: Dict[str, ContextProtocolError] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def by_provider(self) -> Dict[str, List[ToolDescriptor]]:
        grouped: Dict[str, List[ToolDescriptor]] = {}
        for tool in self.tools:
            grouped.setdefault(tool.namespace, []).append(tool)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tools": [dict(tool.to_mcp(), namespace=tool.namespace) for tool in self.tools],
            "failures": {
                name: {"type": type(exc).__name__, "message": str(exc)}
                for name, exc in self.failures.items()
            },
            "warnings": list(self.warnings),
        }


class ClientInvoker:
    def __init__(self, manager: ProviderConnectionManager, registry: ToolRegistry):
        self._manager = manager
        self._registry = registry

    def ready_providers(self) -> List[str]:
        return self._manager.ready_providers()

    async def list_tools(self) -> ToolListing:
        """Refresh every READY provider's catalogue concurrently.

        A provider that fails keeps its previous entries, tagged stale, and is
        reported in ``failures`` and ``warnings``; it never fails the call.
        """
        listing = ToolListing()
        for name, exc in self._manager.failures().items():
            if isinstance(exc, ContextProtocolError):
                listing.failures[name] = exc
            else:
                listing.failures[name] = ProviderUnavailable(str(exc), provider=name)

        providers = self.ready_providers()
        results = await asyncio.gather(
            *(self.refresh_provider(name) for name in providers),
            return_exceptions=True,
        )
        for name, result in zip(providers, results):
            if isinstance(result, Exception) and not isinstance(result, ContextProtocolError):
                logger.error("Tool discovery for provider %s raised %r", name, result)
                result = ToolExecutionFailed(f"{name}/tools/list", result)
            if isinstance(result, ContextProtocolError):
                self._registry.mark_stale(name)
                listing.failures[name] = result
                listing.warnings.append(f"Provider '{name}' omitted from tool listing: {result}")
                logger.warning("Tool discovery failed for provider %s: %s", name, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                listing.tools.extend(result)

        for status in self._manager.statuses():
            if status.state is ConnectionState.DEGRADED and status.name not in listing.failures:
                listing.warnings.append(f"Provider '{status.name}' is degraded; its tools are stale")
        return listing

    async def refresh_provider(self, name: str) -> List[ToolDescriptor]:
        """Run ``tools/list`` (all pages) for one provider and store the result."""
        timeout = self._manager.provider_timeout(name)
        descriptors: List[ToolDescriptor] = []
        cursor: Optional[str] = None
        for _ in range(_MAX_LIST_PAGES):
            params = {"cursor": cursor} if cursor else None
            try:
                result = await self._manager.request(name, Method.TOOLS_LIST.value, params, timeout=timeout)
            except RemoteCallError as exc:
                raise ToolExecutionFailed(f"{name}/tools/list", exc) from exc
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise ToolExecutionFailed(f"{name}/tools/list", "malformed tools/list result")
            for tool in result["tools"]:
                if isinstance(tool, dict) and isinstance(tool.get("name"), str):
                    descriptors.append(ToolDescriptor.from_mcp(name, tool))
                else:
                    logger.warning("Provider %s listed an invalid tool entry: %r", name, tool)
            cursor = result.get("nextCursor")
            if not cursor:
                break
        self._registry.replace_provider_tools(name, descriptors)
        logger.info("Discovered %d tools from provider %s", len(descriptors), name)
        return descriptors

    async def call_tool(
        self,
        provider: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Call a provider tool and return its ``tools/call`` result.

        Raises:
            ProviderUnavailable: unknown or not READY provider (no time spent).
            ToolNotFound: tool not in the provider's discovered catalogue.
            InvalidArguments: arguments rejected by the input schema (nothing sent).
            CallTimeout: no response in time; the connection stays up.
            ToolExecutionFailed: the provider reported a failure.
        """
        arguments = {} if arguments is None else arguments
        if provider == LOCAL_NAMESPACE:
            raise ProviderUnavailable("Local tools are dispatched, not invoked", provider=provider)
        status = self._manager.status(provider)
        if status is None:
            raise ProviderUnavailable("Unknown provider", provider=provider)
        if status.state is not ConnectionState.READY:
            raise ProviderUnavailable(f"Provider is {status.state.value}", provider=provider)

        entry = self._registry.get(provider, tool)
        if entry is None:
            raise ToolNotFound(tool, namespace=provider)
        self._registry.validate_arguments(entry, arguments)

        if timeout is None:
            timeout = self._manager.provider_timeout(provider)
        metrics = McpMetrics(provider, tool)
        try:
            result = await self._manager.request(
                provider,
                Method.TOOLS_CALL.value,
                {"name": tool, "arguments": arguments},
                timeout=timeout,
            )
            if not isinstance(result, dict):
                raise ToolExecutionFailed(entry.descriptor.qualified_name, "malformed tools/call result")
        except RemoteCallError as exc:
            mapped = _map_remote_error(entry, exc)
            metrics.record_failure(mapped)
            metrics.log_telemetry(budget_seconds=timeout)
            raise mapped from exc
        except ContextProtocolError as exc:
            metrics.record_failure(exc)
            metrics.log_telemetry(budget_seconds=timeout)
            raise
        metrics.record_success(len(json.dumps(result, default=str)))
        metrics.log_telemetry(budget_seconds=timeout)
        return result


def _map_remote_error(entry: ToolEntry, exc: RemoteCallError) -> ContextProtocolError:
    descriptor = entry.descriptor
    if exc.code == METHOD_NOT_FOUND:
        return ToolNotFound(descriptor.name, namespace=descriptor.namespace)
    if exc.code == INVALID_PARAMS:
        return InvalidArguments(descriptor.qualified_name, exc.remote_message)
    return ToolExecutionFailed(descriptor.qualified_name, exc)
