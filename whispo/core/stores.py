"""
In-memory collaborators.

The desktop shell injects its own persistent stores and platform lookups;
these implementations back the stand-alone server and the test suite.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

from whispo.core.models import ActiveApplication, GlossaryEntry, HistoryItem, Profile
from whispo.core.ports import TranscriptionFailed

logger = logging.getLogger("Whispo.stores")

DEFAULT_DICTATION_CONFIG: Dict[str, Any] = {
    "shortcut": "hold-ctrl",
    "sttProviderId": "openai",
    "sttLanguage": "auto",
    "transcriptPostProcessingEnabled": False,
    "transcriptPostProcessingProviderId": "openai",
    "hideDockIcon": False,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryHistoryStore:
    def __init__(self, items: Optional[Sequence[HistoryItem]] = None, max_items: int = 500):
        self._lock = threading.Lock()
        self._max_items = max_items
        self._items: List[HistoryItem] = list(items or [])

    def add(self, item: HistoryItem) -> None:
        with self._lock:
            self._items.append(item)
            if len(self._items) > self._max_items:
                self._items = sorted(self._items, key=lambda i: i.created_at)[-self._max_items:]

    def recent(self, limit: int, since: Optional[int] = None) -> List[HistoryItem]:
        with self._lock:
            items = list(self._items)
        if since is not None:
            items = [item for item in items if item.created_at > since]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items[: max(0, limit)]


class InMemoryProfileStore:
    """Profile list with one active profile; a default profile always exists."""

    def __init__(self, profiles: Optional[Sequence[Profile]] = None, active_profile_id: Optional[str] = None):
        self._lock = threading.Lock()
        if not profiles:
            now = _now_ms()
            profiles = [
                Profile(
                    id="default",
                    name="Default",
                    description="Default dictation settings",
                    config=dict(DEFAULT_DICTATION_CONFIG),
                    created_at=now,
                    updated_at=now,
                    is_default=True,
                )
            ]
        self._profiles: Dict[str, Profile] = {profile.id: profile for profile in profiles}
        if active_profile_id is None:
            defaults = [p.id for p in profiles if p.is_default]
            active_profile_id = defaults[0] if defaults else profiles[0].id
        if active_profile_id not in self._profiles:
            raise KeyError(active_profile_id)
        self._active_id = active_profile_id

    def get_active(self) -> Optional[Profile]:
        with self._lock:
            return self._profiles.get(self._active_id)

    def switch(self, profile_id: str) -> Profile:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                raise KeyError(profile_id)
            self._active_id = profile_id
            logger.info("Switched active profile to %s", profile_id)
            return profile


class InMemoryGlossaryStore:
    """Glossary keyed by case-insensitive phrase, kept in insertion order."""

    def __init__(self, entries: Optional[Sequence[GlossaryEntry]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[str, GlossaryEntry] = {}
        for entry in entries or []:
            self._entries[entry.phrase.casefold()] = entry

    def entries(self) -> List[GlossaryEntry]:
        with self._lock:
            return list(self._entries.values())

    def upsert(self, entries: Sequence[GlossaryEntry]) -> List[GlossaryEntry]:
        with self._lock:
            for entry in entries:
                self._entries[entry.phrase.casefold()] = entry
            return list(self._entries.values())


class StaticActiveAppLookup:
    """Returns whatever the host last reported via ``set``."""

    def __init__(self, app: Optional[ActiveApplication] = None):
        self._app = app

    def set(self, app: Optional[ActiveApplication]) -> None:
        self._app = app

    def get_active_application(self) -> Optional[ActiveApplication]:
        return self._app


class UnconfiguredTranscriber:
    def transcribe(self, audio: bytes, audio_format: str) -> str:
        raise TranscriptionFailed("No transcription backend configured")
