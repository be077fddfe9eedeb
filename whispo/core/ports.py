"""
Collaborator interfaces consumed by the protocol layer.

Audio capture, speech-to-text HTTP calls, window detection and persistence live
outside this package; the tool handlers and the context aggregator only see
these protocols.
"""

from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, runtime_checkable

from whispo.core.models import ActiveApplication, GlossaryEntry, HistoryItem, Profile

if TYPE_CHECKING:
    from whispo.context.snapshot import ContextSnapshot


class TranscriptionFailed(RuntimeError):
    """Structured failure reported by a transcription backend."""

    def __init__(self, detail: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        status_hint = f" (status={status_code})" if status_code is not None else ""
        provider_hint = f" [{provider}]" if provider else ""
        super().__init__(f"{detail}{status_hint}{provider_hint}")


@runtime_checkable
class ActiveAppLookup(Protocol):
    def get_active_application(self) -> Optional[ActiveApplication]:
        """Return the foreground application, or None when unknown."""
        ...


@runtime_checkable
class Transcriber(Protocol):
    def transcribe(self, audio: bytes, audio_format: str) -> str:
        """Transcribe encoded audio. Raises TranscriptionFailed."""
        ...


@runtime_checkable
class HistoryStore(Protocol):
    def recent(self, limit: int, since: Optional[int] = None) -> List[HistoryItem]:
        """Most recent items first, optionally only those created after ``since`` (epoch ms)."""
        ...

    def add(self, item: HistoryItem) -> None:
        ...


@runtime_checkable
class ProfileStore(Protocol):
    def get_active(self) -> Optional[Profile]:
        ...

    def switch(self, profile_id: str) -> Profile:
        """Make ``profile_id`` active. Raises KeyError for an unknown id."""
        ...


@runtime_checkable
class GlossaryStore(Protocol):
    def entries(self) -> List[GlossaryEntry]:
        ...

    def upsert(self, entries: Sequence[GlossaryEntry]) -> List[GlossaryEntry]:
        """Insert or replace entries keyed by phrase; returns the full glossary."""
        ...


@runtime_checkable
class DictationControl(Protocol):
    def start_dictation(self, context: Optional[str] = None) -> bool:
        """Ask the recorder to start; False if it was already recording."""
        ...


@runtime_checkable
class Enhancer(Protocol):
    def enhance(self, transcript: str, snapshot: "ContextSnapshot") -> str:
        ...
