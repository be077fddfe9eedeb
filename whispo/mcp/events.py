"""
Outbound event channel.

Provider state changes and tool side effects are published here as typed
``Event`` values. Consumers (tray UI, tests) subscribe with an
``asyncio.Queue``; the protocol layer never calls back into them.
"""

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger("Whispo.mcp.events")


class EventKind(str, Enum):
    PROVIDER_STATE = "provider_state"
    TOOLS_CHANGED = "tools_changed"
    DICTATION_REQUESTED = "dictation_requested"
    GLOSSARY_UPDATED = "glossary_updated"
    PROFILE_SWITCHED = "profile_switched"


class Event(BaseModel):
    kind: EventKind
    provider: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class EventChannel:
    """Fan-out of events to any number of bounded subscriber queues."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

    def subscribe(self, maxsize: int = 256) -> "asyncio.Queue[Event]":
        """Create a queue bound to the running loop. Call from a coroutine."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [(loop, q) for loop, q in self._subscribers if q is not queue]

    def publish(self, event: Event) -> None:
        """Deliver without blocking. Safe to call from worker threads."""
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug("Event %s provider=%s detail=%s", event.kind.value, event.provider, event.detail)
        for loop, queue in subscribers:
            if loop.is_closed():
                self.unsubscribe(queue)
                continue
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                _offer(queue, event)
            else:
                loop.call_soon_threadsafe(_offer, queue, event)

    def emit(self, kind: EventKind, provider: Optional[str] = None, **detail: Any) -> None:
        self.publish(Event(kind=kind, provider=provider, detail=detail))


def _offer(queue: asyncio.Queue, event: Event) -> None:
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    queue.put_nowait(event)
