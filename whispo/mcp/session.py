"""
Whispo MCP Server Session
-------------------------
Routes decoded server-role messages to their handlers. Routing is a table
keyed by the ``Method`` variant decoded in the codec; ``Method.UNKNOWN`` and
any variant without a route get ``-32601``.

Every failure becomes a JSON-RPC error response; nothing raised by a tool
reaches the HTTP listener.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from whispo.core.config import LOCAL_NAMESPACE
from whispo.mcp.codec import CallToolParams, InitializeParams, Message, Method, Notification, Request, Response
from whispo.mcp.dispatcher import ToolDispatcher
from whispo.mcp.errors import ContextProtocolError
from whispo.mcp.handlers import LocalToolHandlers
from whispo.mcp.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    SERVER_NAME,
    SUPPORTED_PROTOCOL_VERSIONS,
    negotiate_protocol_version,
)
from whispo.mcp.state import SharedState
from whispo.version import __version__

logger = logging.getLogger("Whispo.mcp.session")

PROMPTS: List[Dict[str, Any]] = [
    {
        "name": "transcription_help",
        "description": "How to get better dictation results from Whispo",
        "arguments": [],
    },
    {
        "name": "format_transcript",
        "description": "Clean up a raw transcript for the given style",
        "arguments": [
            {"name": "transcript", "description": "Raw transcript text", "required": True},
            {"name": "style", "description": "Target style, e.g. email, notes, code comment", "required": False},
        ],
    },
]

_HELP_TEXT = (
    "Whispo turns speech into text in whatever application has focus.\n"
    "- Use update_glossary for names and jargon that are often misheard.\n"
    "- Use switch_profile to change language or post-processing settings.\n"
    "- get_transcription_history returns the latest transcripts for reuse."
)


class RequestRejected(ContextProtocolError):
    """A request that is well formed but cannot be served."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        super().__init__(message)


def build_initialize_instructions(startup_warnings: Optional[List[str]] = None) -> str:
    base_instructions = (
        "Whispo dictation server. Read transcription history, manage the glossary and "
        "profiles, start dictation, or transcribe audio."
    )
    if not startup_warnings:
        return base_instructions
    bullet_list = "\n".join(f"- {warning}" for warning in startup_warnings)
    return f"{base_instructions}\n\nStartup checks:\n{bullet_list}"


class McpSession:
    def __init__(
        self,
        state: SharedState,
        dispatcher: ToolDispatcher,
        handlers: LocalToolHandlers,
        startup_warnings: Optional[List[str]] = None,
    ):
        self._state = state
        self._dispatcher = dispatcher
        self._handlers = handlers
        self._startup_warnings = list(startup_warnings or [])
        self._routes: Dict[Method, Callable[[Any], Awaitable[Any]]] = {
            Method.INITIALIZE: self._initialize,
            Method.PING: self._ping,
            Method.TOOLS_LIST: self._list_tools,
            Method.TOOLS_CALL: self._call_tool,
            Method.RESOURCES_LIST: self._list_resources,
            Method.RESOURCES_READ: self._read_resource,
            Method.PROMPTS_LIST: self._list_prompts,
            Method.PROMPTS_GET: self._get_prompt,
        }

    def add_startup_warning(self, warning: str) -> None:
        """Shown in the next ``initialize`` result."""
        self._startup_warnings.append(warning)

    async def handle(self, message: Message) -> Optional[Response]:
        """Return the response for a request, or None for anything else."""
        if isinstance(message, Notification):
            self._handle_notification(message)
            return None
        if not isinstance(message, Request):
            logger.debug("Ignoring unsolicited response id=%r", message.id)
            return None

        route = self._routes.get(message.kind)
        if route is None:
            return Response.failure(message.id, METHOD_NOT_FOUND, f"Method not found: {message.method}")
        try:
            result = await route(message.params)
        except ContextProtocolError as exc:
            error = exc.to_error_object()
            return Response.failure(message.id, error["code"], error["message"], error.get("data"))
        except Exception:
            logger.exception("Unhandled error serving %s", message.method)
            return Response.failure(message.id, INTERNAL_ERROR, "Internal error")
        return Response.success(message.id, result)

    def _handle_notification(self, notification: Notification) -> None:
        if notification.kind is Method.INITIALIZED:
            self._state.update_session(initialized=True)
        elif notification.kind is Method.CANCELLED:
            logger.debug("Client cancelled request: %s", notification.params)
        else:
            logger.debug("Ignoring notification %s", notification.method)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def _initialize(self, params: Any) -> Dict[str, Any]:
        if params is not None and not isinstance(params, dict):
            raise RequestRejected(INVALID_PARAMS, "initialize params must be an object")
        try:
            init = InitializeParams.model_validate(params or {})
        except ValidationError as exc:
            raise RequestRejected(INVALID_PARAMS, f"Invalid initialize params: {exc.errors()[0]['msg']}") from None

        negotiated = negotiate_protocol_version(init.protocol_version)
        if not negotiated:
            raise RequestRejected(
                INVALID_PARAMS,
                f"Unsupported protocol version {init.protocol_version}; "
                f"supported: {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}",
            )
        self._state.update_session(
            protocol_version=negotiated,
            client_capabilities=init.capabilities,
            client_info=init.client_info.model_dump() if init.client_info else {},
        )
        logger.info(
            "Client %s initialized with protocol %s",
            init.client_info.name if init.client_info else "<unknown>",
            negotiated,
        )
        return {
            "protocolVersion": negotiated,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
                "prompts": {"listChanged": False},
            },
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "instructions": build_initialize_instructions(self._startup_warnings),
        }

    async def _ping(self, params: Any) -> Dict[str, Any]:
        return {}

    async def _list_tools(self, params: Any) -> Dict[str, Any]:
        entries = self._state.registry.entries(namespace=LOCAL_NAMESPACE)
        return {"tools": [entry.descriptor.to_mcp() for entry in entries]}

    async def _call_tool(self, params: Any) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise RequestRejected(INVALID_PARAMS, "tools/call params must be an object")
        try:
            call = CallToolParams.model_validate(params)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise RequestRejected(INVALID_PARAMS, f"Invalid tools/call params: {location}: {first['msg']}") from None
        return await self._dispatcher.call(call.name, call.arguments)

    async def _list_resources(self, params: Any) -> Dict[str, Any]:
        return {"resources": self._handlers.list_resources()}

    async def _read_resource(self, params: Any) -> Dict[str, Any]:
        uri = params.get("uri") if isinstance(params, dict) else None
        if not isinstance(uri, str) or not uri:
            raise RequestRejected(INVALID_PARAMS, "resources/read requires a 'uri' string")
        content = await asyncio.to_thread(self._handlers.read_resource, uri)
        if content is None:
            raise RequestRejected(INVALID_PARAMS, f"Resource not found: {uri}")
        return {"contents": [content]}

    async def _list_prompts(self, params: Any) -> Dict[str, Any]:
        return {"prompts": [dict(prompt) for prompt in PROMPTS]}

    async def _get_prompt(self, params: Any) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise RequestRejected(INVALID_PARAMS, "prompts/get params must be an object")
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if name == "transcription_help":
            text = _HELP_TEXT
        elif name == "format_transcript":
            transcript = arguments.get("transcript")
            if not isinstance(transcript, str) or not transcript:
                raise RequestRejected(INVALID_PARAMS, "format_transcript requires a 'transcript' argument")
            style = arguments.get("style") or "plain prose"
            text = (
                f"Rewrite the following dictated transcript as {style}. Fix punctuation and "
                f"capitalisation, keep the wording otherwise unchanged.\n\n{transcript}"
            )
        else:
            raise RequestRejected(INVALID_PARAMS, f"Prompt not found: {name}")
        description = next(p["description"] for p in PROMPTS if p["name"] == name)
        return {
            "description": description,
            "messages": [{"role": "user", "content": {"type": "text", "text": text}}],
        }
