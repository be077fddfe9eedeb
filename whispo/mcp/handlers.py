"""
Local tool handlers.

Each handler takes the validated argument dict and talks only to the
collaborators it was given (history, profiles, glossary, transcription,
dictation control). Handlers are synchronous; the dispatcher runs them in a
worker thread. Anything they raise other than ``InvalidArguments`` is reported
as ``ToolExecutionFailed``.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional

from whispo.core.models import GlossaryEntry
from whispo.core.ports import DictationControl, GlossaryStore, HistoryStore, ProfileStore, Transcriber
from whispo.mcp.definitions import MUTATING_TOOLS, local_tool_descriptors
from whispo.mcp.errors import InvalidArguments
from whispo.mcp.events import EventChannel, EventKind
from whispo.mcp.registry import ToolRegistry

logger = logging.getLogger("Whispo.mcp.handlers")

RESOURCES: List[Dict[str, Any]] = [
    {
        "uri": "whispo://config",
        "name": "Dictation configuration",
        "description": "Active profile settings",
        "mimeType": "application/json",
    },
    {
        "uri": "whispo://history",
        "name": "Transcription history",
        "description": "Recent transcripts, newest first",
        "mimeType": "application/json",
    },
    {
        "uri": "whispo://glossary",
        "name": "Glossary",
        "description": "Phrase replacements applied to transcripts",
        "mimeType": "application/json",
    },
]


class LocalToolHandlers:
    def __init__(
        self,
        *,
        history: HistoryStore,
        profiles: ProfileStore,
        glossary: GlossaryStore,
        transcriber: Transcriber,
        events: EventChannel,
        dictation: Optional[DictationControl] = None,
    ):
        self._history = history
        self._profiles = profiles
        self._glossary = glossary
        self._transcriber = transcriber
        self._events = events
        self._dictation = dictation

    def register(self, registry: ToolRegistry) -> None:
        for descriptor in local_tool_descriptors():
            registry.register_local(
                descriptor,
                getattr(self, descriptor.name),
                mutating=descriptor.name in MUTATING_TOOLS,
            )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def get_transcription_history(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        limit = int(arguments.get("limit", 10))
        items = self._history.recent(limit, since=arguments.get("since"))
        return {"count": len(items), "items": [item.to_dict() for item in items]}

    def start_dictation(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        context = arguments.get("context")
        status = "requested"
        if self._dictation is not None:
            status = "started" if self._dictation.start_dictation(context) else "already_recording"
        self._events.emit(EventKind.DICTATION_REQUESTED, context=context, status=status)
        return {"status": status}

    def get_dictation_config(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        profile = self._profiles.get_active()
        return {
            "profile": {"id": profile.id, "name": profile.name} if profile else None,
            "settings": dict(profile.config) if profile else {},
            "glossary": [entry.to_dict() for entry in self._glossary.entries()],
        }

    def update_glossary(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        entries = []
        for index, raw in enumerate(arguments["entries"]):
            phrase = raw["phrase"].strip()
            if not phrase:
                raise InvalidArguments(
                    "local/update_glossary", "phrase must not be blank", path=f"entries/{index}/phrase"
                )
            entries.append(GlossaryEntry(phrase=phrase, replacement=raw["replacement"], context=raw.get("context")))
        glossary = self._glossary.upsert(entries)
        logger.info("Glossary updated with %d entries (%d total)", len(entries), len(glossary))
        self._events.emit(EventKind.GLOSSARY_UPDATED, phrases=[entry.phrase for entry in entries])
        return {"updated": len(entries), "glossary": [entry.to_dict() for entry in glossary]}

    def get_active_profile(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        profile = self._profiles.get_active()
        return {"profile": profile.to_dict() if profile else None}

    def switch_profile(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        profile_id = arguments["profile_id"]
        previous = self._profiles.get_active()
        try:
            profile = self._profiles.switch(profile_id)
        except KeyError:
            raise LookupError(f"Profile not found: {profile_id}") from None
        self._events.emit(
            EventKind.PROFILE_SWITCHED,
            profile_id=profile.id,
            previous_profile_id=previous.id if previous else None,
        )
        return {"profile": profile.to_dict(), "previous_profile_id": previous.id if previous else None}

    def transcribe_audio(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        audio_format = arguments.get("format", "wav")
        try:
            audio = base64.b64decode(arguments["audio"], validate=True)
        except (binascii.Error, ValueError):
            raise InvalidArguments("local/transcribe_audio", "audio is not valid base64", path="audio") from None
        if not audio:
            raise InvalidArguments("local/transcribe_audio", "audio payload is empty", path="audio")
        text = self._transcriber.transcribe(audio, audio_format)
        return {"text": text, "format": audio_format, "bytes": len(audio)}

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def list_resources(self) -> List[Dict[str, Any]]:
        return [dict(resource) for resource in RESOURCES]

    def read_resource(self, uri: str) -> Optional[Dict[str, Any]]:
        """Return the ``resources/read`` content item, or None for an unknown URI."""
        if uri == "whispo://config":
            payload: Any = self.get_dictation_config({})
        elif uri == "whispo://history":
            payload = self.get_transcription_history({"limit": 50})
        elif uri == "whispo://glossary":
            payload = [entry.to_dict() for entry in self._glossary.entries()]
        else:
            return None
        return {"uri": uri, "mimeType": "application/json", "text": json.dumps(payload, indent=2)}
