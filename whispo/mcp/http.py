"""
Whispo MCP HTTP endpoint.

One JSON-RPC message per POST body on a single path. Requests get the
matching response object, notifications get ``202 Accepted`` with no body,
and undecodable bodies get a ``-32700`` error object with a null id.
"""

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from whispo.core.config import LOCAL_NAMESPACE, ServerConfig
from whispo.core.security import verify_token as core_verify_token, warn_if_exposed
from whispo.mcp import codec
from whispo.mcp.errors import MalformedMessage
from whispo.mcp.protocol import INVALID_REQUEST, PARSE_ERROR
from whispo.mcp.session import McpSession
from whispo.mcp.state import SharedState
from whispo.platform import get_platform_info
from whispo.version import __version__

logger = logging.getLogger("Whispo.mcp.http")


def create_app(session: McpSession, state: SharedState, server_config: Optional[ServerConfig] = None) -> FastAPI:
    server_config = server_config or ServerConfig()
    auth_token = server_config.auth_token
    app = FastAPI(title="Whispo MCP", version=__version__)
    security = HTTPBearer(auto_error=False)

    async def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(security)):
        """FastAPI dependency for token verification."""
        token = credentials.credentials if credentials else None
        if not core_verify_token(auth_token, token):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing authentication credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return credentials

    @app.get("/health", dependencies=[Depends(verify_token)])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "localTools": len(state.registry.entries(namespace=LOCAL_NAMESPACE)),
            "providers": [s.to_dict() for s in state.connections.statuses()],
            "platform": get_platform_info(),
        }

    @app.post(server_config.path, dependencies=[Depends(verify_token)])
    async def mcp_endpoint(request: Request):
        body = await request.body()
        try:
            message = codec.decode(body)
        except MalformedMessage as exc:
            logger.warning("Rejected malformed request body: %s", exc)
            error = codec.Response.failure(None, PARSE_ERROR, str(exc), exc.error_data())
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=codec.to_wire(error))

        if isinstance(message, codec.Response):
            error = codec.Response.failure(message.id, INVALID_REQUEST, "Expected a request or notification")
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=codec.to_wire(error))

        response = await session.handle(message)
        if response is None:
            return Response(status_code=status.HTTP_202_ACCEPTED)
        return JSONResponse(content=codec.to_wire(response))

    return app


class HttpServer:
    """Runs uvicorn inside the current event loop so both roles share state."""

    def __init__(self, app: FastAPI, server_config: ServerConfig, log_level: str = "info"):
        self._config = server_config
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=server_config.host,
                port=server_config.port,
                log_level=log_level.lower(),
                lifespan="off",
            )
        )
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, startup_timeout: float = 10.0) -> None:
        warn_if_exposed(self._config.host, self._config.auth_token)
        self._task = asyncio.create_task(self._server.serve(), name="whispo-mcp-http")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + startup_timeout
        while not self._server.started:
            if self._task.done():
                try:
                    await self._task
                except SystemExit:
                    pass
                raise OSError(
                    f"MCP server failed to start on {self._config.host}:{self._config.port}"
                )
            if loop.time() >= deadline:
                await self.stop()
                raise TimeoutError("MCP server did not start in time")
            await asyncio.sleep(0.05)
        logger.info(
            "MCP server listening on http://%s:%d%s",
            self._config.host,
            self._config.port,
            self._config.path,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        except SystemExit:
            pass
        self._task = None
        logger.info("MCP server stopped")

    async def wait(self) -> None:
        """Block until the server exits on its own (signal or ``stop``)."""
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except SystemExit:
            pass
