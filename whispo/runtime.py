"""
Whispo runtime: builds every component once and wires them together.

The desktop shell passes its own collaborators (persistent stores, window
lookup, recorder control, transcription backend); anything left out falls back
to the in-memory implementations so the server also runs stand-alone.
"""

import logging
from typing import Dict, Optional

from whispo.context.aggregator import ContextAggregator
from whispo.context.enhancer import GlossaryEnhancer
from whispo.core.config import McpConfig, WhispoConfig
from whispo.core.ports import (
    ActiveAppLookup,
    DictationControl,
    Enhancer,
    GlossaryStore,
    HistoryStore,
    ProfileStore,
    Transcriber,
)
from whispo.core.stores import (
    InMemoryGlossaryStore,
    InMemoryHistoryStore,
    InMemoryProfileStore,
    StaticActiveAppLookup,
    UnconfiguredTranscriber,
)
from whispo.mcp.dispatcher import ToolDispatcher
from whispo.mcp.errors import ContextProtocolError
from whispo.mcp.handlers import LocalToolHandlers
from whispo.mcp.http import HttpServer, create_app
from whispo.mcp.invoker import ClientInvoker
from whispo.mcp.manager import ProviderConnectionManager
from whispo.mcp.session import McpSession
from whispo.mcp.state import SharedState

logger = logging.getLogger("Whispo.runtime")


class WhispoRuntime:
    def __init__(
        self,
        config: Optional[WhispoConfig] = None,
        *,
        history: Optional[HistoryStore] = None,
        profiles: Optional[ProfileStore] = None,
        glossary: Optional[GlossaryStore] = None,
        transcriber: Optional[Transcriber] = None,
        app_lookup: Optional[ActiveAppLookup] = None,
        dictation: Optional[DictationControl] = None,
        enhancer: Optional[Enhancer] = None,
    ):
        self.config = config or WhispoConfig()
        self.state = SharedState(self.config.mcp)

        self.history = history or InMemoryHistoryStore()
        self.profiles = profiles or InMemoryProfileStore()
        self.glossary = glossary or InMemoryGlossaryStore()
        self.app_lookup = app_lookup or StaticActiveAppLookup()

        self.handlers = LocalToolHandlers(
            history=self.history,
            profiles=self.profiles,
            glossary=self.glossary,
            transcriber=transcriber or UnconfiguredTranscriber(),
            events=self.state.events,
            dictation=dictation,
        )
        self.handlers.register(self.state.registry)
        self.dispatcher = ToolDispatcher(self.state.registry)
        self.session = McpSession(self.state, self.dispatcher, self.handlers)

        self.manager = ProviderConnectionManager(self.state)
        self.invoker = ClientInvoker(self.manager, self.state.registry)
        self.aggregator = ContextAggregator(
            self.state,
            self.invoker,
            app_lookup=self.app_lookup,
            glossary=self.glossary,
            history=self.history,
            enhancer=enhancer or GlossaryEnhancer(),
        )

        self.app = create_app(self.session, self.state, self.config.mcp.server)
        self._http: Optional[HttpServer] = None

    async def start(self, *, serve: Optional[bool] = None) -> Dict[str, ContextProtocolError]:
        """Connect configured providers and, if enabled, start the HTTP server.

        Provider failures are returned, not raised; the server starts anyway.
        """
        failures = await self.manager.apply_config(self.state.config)
        for name, exc in failures.items():
            self.session.add_startup_warning(f"Provider '{name}' unavailable: {exc}")

        if serve is None:
            serve = self.config.mcp.server.enabled
        if serve:
            self._http = HttpServer(self.app, self.config.mcp.server, log_level=self.config.log_level)
            await self._http.start()
        logger.info(
            "Whispo runtime started (%d providers ready, server %s)",
            len(self.manager.ready_providers()),
            "on" if serve else "off",
        )
        return failures

    async def reload(self, config: McpConfig) -> Dict[str, ContextProtocolError]:
        """Apply a new provider configuration without restarting the server."""
        return await self.manager.apply_config(config)

    async def serve_forever(self) -> None:
        if self._http is None:
            raise RuntimeError("HTTP server is not running")
        await self._http.wait()

    async def stop(self) -> None:
        if self._http is not None:
            await self._http.stop()
            self._http = None
        await self.manager.shutdown()
        logger.info("Whispo runtime stopped")

    async def __aenter__(self) -> "WhispoRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
