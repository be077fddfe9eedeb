"""
Whispo Context Aggregator
-------------------------
Builds the ``ContextSnapshot`` handed to the enhancer for one transcript.

Local state (active application, glossary, recent history) and provider
context are gathered concurrently under one deadline, ``context.budget_seconds``.
A provider that has not answered by then is cancelled and listed in
``omitted_providers``; a local field that is late or whose collaborator fails
is left blank, and only that field.

Provider results are flattened into ``provider_context`` with keys of the form
``<provider>.<key>``. A result whose ``_meta.cacheTtlSeconds`` is positive is
kept in the shared context cache and reused until it expires.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from whispo.context.snapshot import AppContext, ContextSnapshot
from whispo.core.config import ContextAwarenessConfig
from whispo.core.models import GlossaryEntry
from whispo.core.ports import ActiveAppLookup, Enhancer, GlossaryStore, HistoryStore
from whispo.mcp.errors import CallTimeout, ToolExecutionFailed
from whispo.mcp.invoker import ClientInvoker
from whispo.mcp.state import SharedState
from whispo.mcp.utils import elapsed_ms, now_ms, parse_json_object, tool_result_text_items

logger = logging.getLogger("Whispo.context.aggregator")

_ACTIVE_FILE_TOOL = "get_active_file"
_PROJECT_TOOL = "get_project_info"
_ACTIVE_FILE_KEYS = ("path", "file_path", "filePath")


@dataclass
class _ProviderContext:
    values: Dict[str, Any] = field(default_factory=dict)
    active_file: Optional[str] = None
    ttl_seconds: float = 0.0

    def to_cache(self) -> Dict[str, Any]:
        return {"values": dict(self.values), "active_file": self.active_file}

    @classmethod
    def from_cache(cls, cached: Dict[str, Any]) -> "_ProviderContext":
        return cls(values=dict(cached.get("values") or {}), active_file=cached.get("active_file"))


def _cache_ttl(result: Dict[str, Any]) -> float:
    meta = result.get("_meta")
    if not isinstance(meta, dict):
        return 0.0
    ttl = meta.get("cacheTtlSeconds")
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        return 0.0
    return float(ttl) if ttl > 0 else 0.0


def _cap_excerpts(transcripts: List[str], max_chars: int) -> Tuple[str, ...]:
    """Keep transcripts in order until ``max_chars`` total; the last one is cut to fit."""
    excerpts = []
    remaining = max_chars
    for text in transcripts:
        if remaining <= 0:
            break
        excerpt = text[:remaining]
        excerpts.append(excerpt)
        remaining -= len(excerpt)
    return tuple(excerpts)


class ContextAggregator:
    def __init__(
        self,
        state: SharedState,
        invoker: ClientInvoker,
        *,
        app_lookup: Optional[ActiveAppLookup] = None,
        glossary: Optional[GlossaryStore] = None,
        history: Optional[HistoryStore] = None,
        enhancer: Optional[Enhancer] = None,
    ):
        self._state = state
        self._invoker = invoker
        self._app_lookup = app_lookup
        self._glossary = glossary
        self._history = history
        self._enhancer = enhancer

    async def build_snapshot(self) -> ContextSnapshot:
        start = time.monotonic()
        config = self._state.config.context
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.budget_seconds

        local_tasks = {
            "active application": asyncio.ensure_future(asyncio.to_thread(self._lookup_app)),
            "glossary": asyncio.ensure_future(asyncio.to_thread(self._read_glossary, config)),
            "history": asyncio.ensure_future(asyncio.to_thread(self._read_history, config)),
        }
        providers = self._invoker.ready_providers()
        provider_tasks = {
            name: asyncio.ensure_future(self._pull_provider(name, config, deadline))
            for name in providers
        }

        tasks = list(local_tasks.values()) + list(provider_tasks.values())
        done, pending = await asyncio.wait(tasks, timeout=config.budget_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        app_result = self._local_result("active application", local_tasks, done, config)
        glossary_result = self._local_result("glossary", local_tasks, done, config)
        history_result = self._local_result("history", local_tasks, done, config)

        app: Optional[AppContext] = None
        active_file: Optional[str] = None
        if app_result is not None:
            app = AppContext.from_application(app_result)
            if config.use_file_context:
                active_file = app_result.file_path
        glossary: Tuple[GlossaryEntry, ...] = tuple(glossary_result or ())
        recent: Tuple[str, ...] = tuple(history_result or ())

        contributions: Dict[str, _ProviderContext] = {}
        omitted: List[str] = []
        for name, task in provider_tasks.items():
            if task not in done:
                logger.warning("Provider %s exceeded the %.2fs context budget", name, config.budget_seconds)
                omitted.append(name)
                continue
            exc = task.exception()
            if exc is not None:
                if not isinstance(exc, Exception):
                    raise exc
                logger.warning("Provider %s contributed no context: %s", name, exc)
                omitted.append(name)
                continue
            contributions[name] = task.result()

        provider_context: Dict[str, Any] = {}
        for name in providers:
            contribution = contributions.get(name)
            if contribution is None:
                continue
            provider_context.update(contribution.values)
            if active_file is None and contribution.active_file:
                active_file = contribution.active_file

        snapshot = ContextSnapshot(
            created_at=now_ms(),
            active_application=app,
            active_file=active_file,
            glossary=glossary,
            recent_interactions=recent,
            provider_context=provider_context,
            contributing_providers=tuple(name for name in providers if name in contributions),
            omitted_providers=tuple(omitted),
            elapsed_ms=elapsed_ms(start),
        )
        logger.debug(
            "Built context snapshot in %.1fms (%d providers, %d omitted)",
            snapshot.elapsed_ms,
            len(snapshot.contributing_providers),
            len(omitted),
        )
        return snapshot

    async def enhance(self, transcript: str, snapshot: ContextSnapshot) -> str:
        """Pass the transcript and snapshot to the enhancer and return its output unchanged."""
        if self._enhancer is None:
            return transcript
        try:
            output = self._enhancer.enhance(transcript, snapshot)
            if inspect.isawaitable(output):
                output = await output
        except Exception:
            logger.exception("Enhancer failed; keeping the raw transcript")
            return transcript
        return output

    async def enhance_transcript(self, transcript: str) -> str:
        snapshot = await self.build_snapshot()
        return await self.enhance(transcript, snapshot)

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------

    @staticmethod
    def _local_result(label: str, tasks: Dict[str, "asyncio.Future[Any]"], done, config: ContextAwarenessConfig) -> Any:
        """The field's value, or None when it failed or missed the budget."""
        task = tasks[label]
        if task not in done:
            logger.warning("Local %s lookup exceeded the %.2fs context budget", label, config.budget_seconds)
            return None
        exc = task.exception()
        if exc is not None:
            if not isinstance(exc, Exception):
                raise exc
            logger.warning("Local %s lookup failed: %s", label, exc)
            return None
        return task.result()

    def _lookup_app(self):
        if self._app_lookup is None:
            return None
        return self._app_lookup.get_active_application()

    def _read_glossary(self, config: ContextAwarenessConfig) -> List[GlossaryEntry]:
        if self._glossary is None or not config.use_glossary:
            return []
        return self._glossary.entries()

    def _read_history(self, config: ContextAwarenessConfig) -> Tuple[str, ...]:
        if self._history is None or not config.use_recent_interactions or config.recent_history_limit == 0:
            return ()
        items = self._history.recent(config.recent_history_limit)
        return _cap_excerpts([item.transcript for item in items], config.max_context_length)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def _wanted_tools(self, config: ContextAwarenessConfig) -> List[str]:
        tools = []
        for tool in config.provider_tools:
            if tool == _ACTIVE_FILE_TOOL and not config.use_file_context:
                continue
            if tool == _PROJECT_TOOL and not config.use_project_context:
                continue
            tools.append(tool)
        return tools

    async def _pull_provider(self, name: str, config: ContextAwarenessConfig, deadline: float) -> _ProviderContext:
        cached = self._state.context_cache.get(name)
        if cached is not None:
            logger.debug("Using cached context for provider %s", name)
            return _ProviderContext.from_cache(dict(cached))

        registry = self._state.registry
        if not registry.entries(namespace=name, include_stale=False):
            await self._invoker.refresh_provider(name)

        loop = asyncio.get_running_loop()
        contribution = _ProviderContext()
        ttls = []
        for tool in self._wanted_tools(config):
            if registry.get(name, tool) is None:
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise CallTimeout(f"tools/call {tool}", timeout=config.budget_seconds, provider=name)
            result = await self._invoker.call_tool(name, tool, {}, timeout=remaining)
            if result.get("isError"):
                texts = tool_result_text_items(result)
                raise ToolExecutionFailed(f"{name}/{tool}", texts[0] if texts else "tool reported an error")
            self._merge_result(name, tool, result, contribution)
            ttls.append(_cache_ttl(result))

        # The shortest hint bounds how long the merged values stay valid.
        if ttls and min(ttls) > 0:
            contribution.ttl_seconds = min(ttls)
            self._state.context_cache.put(name, contribution.to_cache(), contribution.ttl_seconds)
        return contribution

    @staticmethod
    def _merge_result(provider: str, tool: str, result: Dict[str, Any], contribution: _ProviderContext) -> None:
        structured = result.get("structuredContent")
        objects: List[Dict[str, Any]] = []
        texts: List[str] = []
        if isinstance(structured, dict):
            objects.append(structured)
        else:
            for text in tool_result_text_items(result):
                parsed = parse_json_object(text)
                if parsed is not None:
                    objects.append(parsed)
                else:
                    texts.append(text)

        for obj in objects:
            for key, value in obj.items():
                contribution.values[f"{provider}.{key}"] = value
            if tool == _ACTIVE_FILE_TOOL and contribution.active_file is None:
                for key in _ACTIVE_FILE_KEYS:
                    if isinstance(obj.get(key), str) and obj[key]:
                        contribution.active_file = obj[key]
                        break
        if texts:
            joined = "\n".join(texts)
            contribution.values[f"{provider}.{tool}"] = joined
            if tool == _ACTIVE_FILE_TOOL and contribution.active_file is None and joined.strip():
                contribution.active_file = joined.strip()

