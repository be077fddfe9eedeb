import base64

import pytest

from whispo.core.models import HistoryItem, Profile
from whispo.core.stores import DEFAULT_DICTATION_CONFIG, InMemoryProfileStore
from whispo.mcp.definitions import MUTATING_TOOLS, READ_ONLY_TOOLS, TOOLS_SCHEMAS, local_tool_descriptors
from whispo.mcp.errors import InvalidArguments, ToolExecutionFailed
from whispo.mcp.events import EventKind

EXPECTED_TOOLS = {
    "get_transcription_history",
    "start_dictation",
    "get_dictation_config",
    "update_glossary",
    "get_active_profile",
    "switch_profile",
    "transcribe_audio",
}


@pytest.fixture
def profiles():
    return InMemoryProfileStore([
        Profile(id="default", name="Default", config=dict(DEFAULT_DICTATION_CONFIG), is_default=True),
        Profile(id="code", name="Coding", config={"sttLanguage": "en"}),
    ])


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_catalogue_is_complete_and_annotated():
    assert {schema["name"] for schema in TOOLS_SCHEMAS} == EXPECTED_TOOLS
    assert READ_ONLY_TOOLS | MUTATING_TOOLS == EXPECTED_TOOLS
    for descriptor in local_tool_descriptors():
        assert descriptor.namespace == "local"
        assert descriptor.input_schema["$schema"].endswith("2020-12/schema")
        assert descriptor.annotations["readOnlyHint"] is (descriptor.name in READ_ONLY_TOOLS)


def test_handlers_register_every_tool(state, handlers):
    names = {entry.descriptor.name for entry in state.registry.entries(namespace="local")}
    assert names == EXPECTED_TOOLS
    assert state.registry.get("local", "switch_profile").mutating
    assert not state.registry.get("local", "get_active_profile").mutating


@pytest.mark.asyncio
async def test_history_newest_first_with_limit(dispatcher):
    result = await dispatcher.dispatch("get_transcription_history", {"limit": 2})
    assert result["count"] == 2
    assert [item["id"] for item in result["items"]] == ["h3", "h2"]


@pytest.mark.asyncio
async def test_history_since_filter(dispatcher, history):
    history.add(HistoryItem(id="h4", created_at=4_000, transcript="fourth"))
    result = await dispatcher.dispatch("get_transcription_history", {"since": 2_500})
    assert [item["id"] for item in result["items"]] == ["h4", "h3"]


@pytest.mark.asyncio
async def test_history_limit_bounds_are_enforced(dispatcher):
    with pytest.raises(InvalidArguments):
        await dispatcher.dispatch("get_transcription_history", {"limit": 0})
    with pytest.raises(InvalidArguments):
        await dispatcher.dispatch("get_transcription_history", {"limit": 1001})


@pytest.mark.asyncio
async def test_update_glossary_upserts_and_emits_event(state, dispatcher, glossary):
    queue = state.events.subscribe()
    result = await dispatcher.dispatch(
        "update_glossary",
        {"entries": [
            {"phrase": "Pie Torch", "replacement": "PyTorch (2.x)"},
            {"phrase": "whisper oh", "replacement": "Whispo", "context": "product name"},
        ]},
    )
    assert result["updated"] == 2
    phrases = {entry.phrase: entry.replacement for entry in glossary.entries()}
    assert phrases == {"Pie Torch": "PyTorch (2.x)", "whisper oh": "Whispo"}

    [event] = _drain(queue)
    assert event.kind is EventKind.GLOSSARY_UPDATED
    assert event.detail["phrases"] == ["Pie Torch", "whisper oh"]


@pytest.mark.asyncio
async def test_glossary_update_is_visible_in_dictation_config(dispatcher):
    await dispatcher.call("update_glossary", {"entries": [{"phrase": "whisper oh", "replacement": "Whispo"}]})

    result = await dispatcher.call("get_dictation_config", {})
    assert result["isError"] is False
    glossary = result["structuredContent"]["glossary"]
    assert {"phrase": "whisper oh", "replacement": "Whispo"} in glossary
    assert {"phrase": "pie torch", "replacement": "PyTorch"} in glossary
    assert result["structuredContent"]["profile"]["id"] == "default"


@pytest.mark.asyncio
async def test_update_glossary_rejects_empty_and_blank_entries(dispatcher):
    with pytest.raises(InvalidArguments):
        await dispatcher.dispatch("update_glossary", {"entries": []})
    with pytest.raises(InvalidArguments) as exc_info:
        await dispatcher.dispatch("update_glossary", {"entries": [{"phrase": "   ", "replacement": "x"}]})
    assert exc_info.value.path == "entries/0/phrase"


@pytest.mark.asyncio
async def test_profiles(state, dispatcher, profiles):
    active = await dispatcher.dispatch("get_active_profile")
    assert active["profile"]["id"] == "default"

    config = await dispatcher.dispatch("get_dictation_config")
    assert config["profile"]["id"] == "default"
    assert config["settings"]["sttLanguage"] == "auto"
    assert config["glossary"] == [{"phrase": "pie torch", "replacement": "PyTorch"}]


@pytest.mark.asyncio
async def test_switch_profile_unknown_id_is_execution_failure(dispatcher):
    with pytest.raises(ToolExecutionFailed) as exc_info:
        await dispatcher.dispatch("switch_profile", {"profile_id": "nope"})
    assert "Profile not found: nope" in exc_info.value.error_data()["cause"]


@pytest.mark.asyncio
async def test_switch_profile_emits_event(state, dispatcher, profiles):
    queue = state.events.subscribe()
    result = await dispatcher.dispatch("switch_profile", {"profile_id": "code"})
    assert result["profile"]["id"] == "code"
    assert result["previous_profile_id"] == "default"
    [event] = _drain(queue)
    assert event.kind is EventKind.PROFILE_SWITCHED
    assert event.detail["profile_id"] == "code"


@pytest.mark.asyncio
async def test_start_dictation(state, dispatcher, dictation):
    queue = state.events.subscribe()
    first = await dispatcher.dispatch("start_dictation", {"context": "reply to email"})
    second = await dispatcher.dispatch("start_dictation")
    assert first["status"] == "started"
    assert second["status"] == "already_recording"
    assert dictation.contexts == ["reply to email", None]
    kinds = [event.kind for event in _drain(queue)]
    assert kinds == [EventKind.DICTATION_REQUESTED, EventKind.DICTATION_REQUESTED]


@pytest.mark.asyncio
async def test_transcribe_audio(dispatcher, transcriber):
    audio = base64.b64encode(b"RIFF....WAVE").decode("ascii")
    result = await dispatcher.dispatch("transcribe_audio", {"audio": audio, "format": "wav"})
    assert result == {"text": "hello world", "format": "wav", "bytes": 12}
    assert transcriber.calls == [(b"RIFF....WAVE", "wav")]


@pytest.mark.asyncio
async def test_transcribe_audio_rejects_bad_input(dispatcher, transcriber):
    with pytest.raises(InvalidArguments) as exc_info:
        await dispatcher.dispatch("transcribe_audio", {"audio": "not base64!!"})
    assert exc_info.value.path == "audio"
    with pytest.raises(InvalidArguments):
        await dispatcher.dispatch("transcribe_audio", {"audio": "AAAA", "format": "aiff"})
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_transcription_backend_failure_is_execution_failure(state, history, profiles, glossary):
    from whispo.core.stores import UnconfiguredTranscriber
    from whispo.mcp.dispatcher import ToolDispatcher
    from whispo.mcp.handlers import LocalToolHandlers
    from whispo.mcp.state import SharedState

    fresh = SharedState()
    LocalToolHandlers(
        history=history,
        profiles=profiles,
        glossary=glossary,
        transcriber=UnconfiguredTranscriber(),
        events=fresh.events,
    ).register(fresh.registry)
    with pytest.raises(ToolExecutionFailed) as exc_info:
        await ToolDispatcher(fresh.registry).dispatch("transcribe_audio", {"audio": "AAAA"})
    assert "TranscriptionFailed" in exc_info.value.error_data()["cause"]


def test_resources(handlers):
    uris = [resource["uri"] for resource in handlers.list_resources()]
    assert uris == ["whispo://config", "whispo://history", "whispo://glossary"]
    content = handlers.read_resource("whispo://glossary")
    assert content["mimeType"] == "application/json"
    assert "PyTorch" in content["text"]
    assert handlers.read_resource("whispo://nope") is None
