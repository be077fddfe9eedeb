"""
Whispo context protocol exceptions.

Every failure that crosses a component boundary (codec, connection manager,
client invoker, dispatcher) is raised as one of these types. Each carries the
JSON-RPC code used when it is reported to a remote peer.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from whispo.mcp.protocol import (
    HANDSHAKE_FAILED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROVIDER_UNAVAILABLE,
    TIMEOUT,
)

_FRAGMENT_LIMIT = 200


class ContextProtocolError(RuntimeError):
    """Base class for protocol layer errors."""

    code: int = INTERNAL_ERROR

    def error_data(self) -> Optional[Dict[str, Any]]:
        return None

    def to_error_object(self) -> Dict[str, Any]:
        """Render as a JSON-RPC error object."""
        payload: Dict[str, Any] = {"code": self.code, "message": str(self)}
        data = self.error_data()
        if data:
            payload["data"] = data
        return payload


class MalformedMessage(ContextProtocolError):
    """Raised when wire data cannot be decoded into a message."""

    code = PARSE_ERROR

    def __init__(self, reason: str, *, fragment: Any = None) -> None:
        self.reason = reason
        self.fragment = truncate_fragment(fragment)
        hint = f": {self.fragment!r}" if self.fragment else ""
        super().__init__(f"Malformed message ({reason}){hint}")

    def error_data(self) -> Optional[Dict[str, Any]]:
        return {"fragment": self.fragment} if self.fragment else None


class ProviderUnavailable(ContextProtocolError):
    """Raised when a provider process cannot start or its connection is not Ready."""

    code = PROVIDER_UNAVAILABLE

    def __init__(self, detail: str, *, provider: Optional[str] = None) -> None:
        self.provider = provider
        provider_hint = f" [{provider}]" if provider else ""
        super().__init__(f"{detail}{provider_hint}")

    def error_data(self) -> Optional[Dict[str, Any]]:
        return {"provider": self.provider} if self.provider else None


class HandshakeFailed(ContextProtocolError):
    """Raised when the initialize exchange with a provider does not succeed."""

    code = HANDSHAKE_FAILED

    def __init__(self, detail: str, *, provider: Optional[str] = None) -> None:
        self.provider = provider
        provider_hint = f" [{provider}]" if provider else ""
        super().__init__(f"{detail}{provider_hint}")


class CallTimeout(ContextProtocolError):
    """Raised when no response arrives within the call budget."""

    code = TIMEOUT

    def __init__(
        self,
        method: str,
        *,
        timeout: float,
        provider: Optional[str] = None,
    ) -> None:
        self.method = method
        self.timeout = timeout
        self.provider = provider
        provider_hint = f" [{provider}]" if provider else ""
        super().__init__(f"No response to '{method}' within {timeout:.2f}s{provider_hint}")


class ToolNotFound(ContextProtocolError):
    """Raised when a tool name does not resolve in the target namespace."""

    code = METHOD_NOT_FOUND

    def __init__(self, name: str, *, namespace: Optional[str] = None) -> None:
        self.name = name
        self.namespace = namespace
        qualified = f"{namespace}/{name}" if namespace else name
        super().__init__(f"Tool not found: {qualified}")


class InvalidArguments(ContextProtocolError):
    """Raised when tool arguments violate the tool's input schema."""

    code = INVALID_PARAMS

    def __init__(self, tool: str, constraint: str, *, path: str = "") -> None:
        self.tool = tool
        self.constraint = constraint
        self.path = path
        location = f" at '{path}'" if path else ""
        super().__init__(f"Invalid arguments for {tool}{location}: {constraint}")

    def error_data(self) -> Optional[Dict[str, Any]]:
        return {"tool": self.tool, "constraint": self.constraint, "path": self.path}


class ToolExecutionFailed(ContextProtocolError):
    """Raised when a tool handler (local or remote) fails. The cause is kept."""

    code = INTERNAL_ERROR

    def __init__(self, tool: str, cause: Any) -> None:
        self.tool = tool
        self.cause = cause
        super().__init__(f"Tool '{tool}' failed: {cause}")

    def error_data(self) -> Optional[Dict[str, Any]]:
        if isinstance(self.cause, BaseException):
            cause = f"{type(self.cause).__name__}: {self.cause}"
        else:
            cause = str(self.cause)
        return {"tool": self.tool, "cause": cause}


class RemoteCallError(ContextProtocolError):
    """A provider answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, *, data: Any = None) -> None:
        self.code = code
        self.remote_message = message
        self.data = data
        super().__init__(f"{message} (code={code})")

    def error_data(self) -> Optional[Dict[str, Any]]:
        return self.data if isinstance(self.data, dict) else None


def truncate_fragment(fragment: Any, limit: int = _FRAGMENT_LIMIT) -> str:
    if fragment is None:
        return ""
    if isinstance(fragment, (bytes, bytearray)):
        text = bytes(fragment[: limit * 4]).decode("utf-8", errors="replace")
    else:
        text = str(fragment)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
