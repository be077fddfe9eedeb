from typing import List, Dict, Any

from whispo.mcp.protocol import JSON_SCHEMA_2020_12
from whispo.mcp.registry import ToolDescriptor

AUDIO_FORMATS = ("wav", "mp3", "webm", "ogg", "m4a", "flac")

TOOLS_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": "get_transcription_history",
        "description": "Retrieve recent dictation transcripts, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 1000,
                    "default": 10,
                    "description": "Maximum number of items to return (default 10).",
                },
                "since": {
                    "type": "integer",
                    "minimum": 0,
                    "description": "Only return items created after this time (epoch milliseconds).",
                },
            },
        },
    },
    {
        "name": "start_dictation",
        "description": "Start a dictation session in the desktop app, as if the user pressed the shortcut.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "context": {
                    "type": "string",
                    "description": "Optional hint describing what will be dictated.",
                },
            },
        },
    },
    {
        "name": "get_dictation_config",
        "description": "Get the active dictation settings and the glossary used to correct transcripts.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "update_glossary",
        "description": "Add or replace glossary entries. Each phrase heard in a transcript is replaced with its replacement.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entries": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "phrase": {"type": "string", "minLength": 1, "description": "Text as it is usually transcribed."},
                            "replacement": {"type": "string", "description": "Text to write instead."},
                            "context": {"type": "string", "description": "Optional note on when the entry applies."},
                        },
                        "required": ["phrase", "replacement"],
                    },
                },
            },
            "required": ["entries"],
        },
    },
    {
        "name": "get_active_profile",
        "description": "Get the currently active dictation profile.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "switch_profile",
        "description": "Make another dictation profile active.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "profile_id": {"type": "string", "minLength": 1, "description": "Identifier of the profile to activate."},
            },
            "required": ["profile_id"],
        },
    },
    {
        "name": "transcribe_audio",
        "description": "Transcribe base64-encoded audio with the configured speech-to-text provider.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "audio": {
                    "type": "string",
                    "minLength": 1,
                    "contentEncoding": "base64",
                    "description": "Encoded audio bytes, base64.",
                },
                "format": {
                    "type": "string",
                    "enum": list(AUDIO_FORMATS),
                    "default": "wav",
                    "description": "Container/codec of the audio payload (default wav).",
                },
            },
            "required": ["audio"],
        },
    },
]

READ_ONLY_TOOLS = {
    "get_transcription_history", "get_dictation_config", "get_active_profile", "transcribe_audio",
}

# Serialized per tool by the dispatcher.
MUTATING_TOOLS = {"start_dictation", "update_glossary", "switch_profile"}

DESTRUCTIVE_TOOLS: set = set()

IDEMPOTENT_TOOLS = READ_ONLY_TOOLS.union({"update_glossary", "switch_profile"})


def tool_annotations(name: str) -> Dict[str, Any]:
    read_only = name in READ_ONLY_TOOLS
    return {
        "readOnlyHint": read_only,
        "destructiveHint": name in DESTRUCTIVE_TOOLS,
        "idempotentHint": name in IDEMPOTENT_TOOLS or read_only,
        "openWorldHint": name == "transcribe_audio",
    }


def local_tool_descriptors() -> List[ToolDescriptor]:
    descriptors = []
    for schema_def in TOOLS_SCHEMAS:
        name = schema_def["name"]
        input_schema = dict(schema_def["inputSchema"])
        input_schema.setdefault("$schema", JSON_SCHEMA_2020_12)
        descriptors.append(
            ToolDescriptor(
                name=name,
                description=schema_def["description"],
                input_schema=input_schema,
                annotations=tool_annotations(name),
            )
        )
    return descriptors
