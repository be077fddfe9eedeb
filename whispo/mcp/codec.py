"""
Whispo MCP Message Codec
------------------------
Typed JSON-RPC 2.0 messages and their wire encoding.

``decode`` turns raw bytes into a ``Request``, ``Notification`` or
``Response``; anything else raises ``MalformedMessage``. Unknown fields are
kept on the model (``extra="allow"``) so that they survive a round trip.

Method names are decoded once, at this boundary, into the closed ``Method``
enum; routing code switches on ``message.kind`` and never on raw strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from whispo.mcp.errors import MalformedMessage
from whispo.mcp.protocol import JSONRPC_VERSION

logger = logging.getLogger("Whispo.mcp.codec")

MessageId = Union[int, str]


class Method(str, Enum):
    """Methods understood by either role of the protocol layer."""

    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    RESOURCES_LIST = "resources/list"
    RESOURCES_READ = "resources/read"
    PROMPTS_LIST = "prompts/list"
    PROMPTS_GET = "prompts/get"
    TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
    CANCELLED = "notifications/cancelled"
    SHUTDOWN = "notifications/shutdown"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> "Method":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


class ErrorObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any = None


class Request(BaseModel):
    model_config = ConfigDict(extra="allow")

    jsonrpc: str = JSONRPC_VERSION
    id: MessageId
    method: str
    params: Optional[Union[Dict[str, Any], list]] = None

    @property
    def kind(self) -> Method:
        return Method.parse(self.method)


class Notification(BaseModel):
    model_config = ConfigDict(extra="allow")

    jsonrpc: str = JSONRPC_VERSION
    method: str
    params: Optional[Union[Dict[str, Any], list]] = None

    @property
    def kind(self) -> Method:
        return Method.parse(self.method)


class Response(BaseModel):
    """A response carries exactly one of ``result`` or ``error``."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[MessageId] = None
    result: Any = None
    error: Optional[ErrorObject] = None

    @model_validator(mode="after")
    def _result_xor_error(self) -> "Response":
        has_result = "result" in self.model_fields_set
        has_error = self.error is not None
        if has_result and has_error:
            raise ValueError("response carries both result and error")
        if not has_result and not has_error:
            raise ValueError("response carries neither result nor error")
        return self

    @classmethod
    def success(cls, msg_id: Optional[MessageId], result: Any) -> "Response":
        return cls(id=msg_id, result=result)

    @classmethod
    def failure(
        cls,
        msg_id: Optional[MessageId],
        code: int,
        message: str,
        data: Any = None,
    ) -> "Response":
        return cls(id=msg_id, error=ErrorObject(code=code, message=message, data=data))

    @property
    def is_error(self) -> bool:
        return self.error is not None


Message = Union[Request, Notification, Response]


# ---------------------------------------------------------------------------
# Typed parameter payloads
# ---------------------------------------------------------------------------

class ClientInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    version: str = "0"


class InitializeParams(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    client_info: Optional[ClientInfo] = Field(default=None, alias="clientInfo")


class CallToolParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------

def to_wire(message: Message) -> Dict[str, Any]:
    """Return the JSON-ready dict for a typed message."""
    payload = message.model_dump(mode="json", by_alias=True)
    if isinstance(message, Response):
        if message.error is not None:
            payload.pop("result", None)
            if message.error.data is None:
                payload["error"].pop("data", None)
        else:
            payload.pop("error", None)
    elif message.params is None:
        payload.pop("params", None)
    return payload


def encode(message: Message) -> bytes:
    """Serialize a message to compact UTF-8 JSON (no framing)."""
    return json.dumps(to_wire(message), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(raw: Union[bytes, bytearray, str]) -> Message:
    """Decode one wire message.

    Raises:
        MalformedMessage: for anything that is not a valid JSON-RPC 2.0
            request, notification or response.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessage("invalid UTF-8", fragment=raw) from None
    else:
        text = raw

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedMessage(f"invalid JSON: {exc.msg}", fragment=text) from None
    except RecursionError:
        raise MalformedMessage("invalid JSON: nesting too deep", fragment=text) from None
    except ValueError as exc:
        raise MalformedMessage(f"invalid JSON: {exc}", fragment=text) from None

    return decode_object(data, fragment=text)


def decode_object(data: Any, *, fragment: Any = None) -> Message:
    """Decode an already-parsed JSON value into a typed message."""
    if fragment is None:
        fragment = data
    if not isinstance(data, dict):
        raise MalformedMessage("message must be a JSON object", fragment=fragment)
    if data.get("jsonrpc") != JSONRPC_VERSION:
        raise MalformedMessage("missing or unsupported jsonrpc version", fragment=fragment)

    if "method" in data:
        model = Request if "id" in data else Notification
    elif "result" in data or "error" in data:
        model = Response
    else:
        raise MalformedMessage("neither request, notification nor response", fragment=fragment)

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        reason = first.get("msg", "validation failed")
        if location:
            reason = f"{location}: {reason}"
        raise MalformedMessage(reason, fragment=fragment) from None


# ---------------------------------------------------------------------------
# Stream framing
# ---------------------------------------------------------------------------

async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """
    Read one raw message payload from a stream.
    Supports Content-Length framing and newline-delimited JSON.
    Returns None at end of stream.
    """
    while True:
        line = await reader.readline()
        if not line:
            return None
        if not line.strip():
            continue

        if line.lower().startswith(b"content-length:"):
            try:
                content_length = int(line.split(b":", 1)[1].strip())
                if content_length <= 0:
                    raise ValueError("content length must be positive")
            except ValueError:
                logger.warning("Invalid Content-Length header: %r", line)
                if not await _consume_framing_headers(reader):
                    return None
                continue

            if not await _consume_framing_headers(reader):
                return None
            try:
                return await reader.readexactly(content_length)
            except asyncio.IncompleteReadError:
                return None

        return line.rstrip(b"\r\n")


async def _consume_framing_headers(reader: asyncio.StreamReader) -> bool:
    while True:
        header_line = await reader.readline()
        if not header_line:
            return False
        if header_line in (b"\r\n", b"\n"):
            return True


def frame(message: Message) -> bytes:
    """Newline-delimited framing used for everything this layer writes."""
    return encode(message) + b"\n"
