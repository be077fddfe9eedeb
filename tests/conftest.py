import sys
from pathlib import Path

import pytest

from whispo.core.config import McpConfig, ProviderConfig, TimingConfig
from whispo.core.models import GlossaryEntry, HistoryItem
from whispo.core.stores import (
    InMemoryGlossaryStore,
    InMemoryHistoryStore,
    InMemoryProfileStore,
    StaticActiveAppLookup,
)
from whispo.mcp.dispatcher import ToolDispatcher
from whispo.mcp.handlers import LocalToolHandlers
from whispo.mcp.state import SharedState

FAKE_PROVIDER = Path(__file__).with_name("fake_provider.py")


class RecordingTranscriber:
    def __init__(self, text="hello world"):
        self.text = text
        self.calls = []

    def transcribe(self, audio, audio_format):
        self.calls.append((audio, audio_format))
        return self.text


class RecordingDictation:
    def __init__(self):
        self.recording = False
        self.contexts = []

    def start_dictation(self, context=None):
        self.contexts.append(context)
        if self.recording:
            return False
        self.recording = True
        return True


@pytest.fixture
def make_provider():
    def _make(name="fake", **env):
        return ProviderConfig(
            name=name,
            command=sys.executable,
            args=[str(FAKE_PROVIDER)],
            env={key: str(value) for key, value in env.items()},
        )
    return _make


@pytest.fixture
def fast_timing():
    return TimingConfig(
        call_timeout_seconds=5.0,
        handshake_timeout_seconds=5.0,
        heartbeat_interval_seconds=0,
        reconnect_max_attempts=2,
        reconnect_base_delay_seconds=0.05,
        reconnect_max_delay_seconds=0.2,
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture
def make_state(fast_timing):
    def _make(*providers, **overrides):
        overrides.setdefault("timing", fast_timing)
        config = McpConfig(enabled=True, providers=list(providers), **overrides)
        return SharedState(config)
    return _make


@pytest.fixture
def history():
    return InMemoryHistoryStore([
        HistoryItem(id="h1", created_at=1_000, transcript="first note", duration=900),
        HistoryItem(id="h2", created_at=2_000, transcript="second note", duration=1200),
        HistoryItem(id="h3", created_at=3_000, transcript="third note", duration=800),
    ])


@pytest.fixture
def glossary():
    return InMemoryGlossaryStore([GlossaryEntry(phrase="pie torch", replacement="PyTorch")])


@pytest.fixture
def profiles():
    return InMemoryProfileStore()


@pytest.fixture
def app_lookup():
    return StaticActiveAppLookup()


@pytest.fixture
def transcriber():
    return RecordingTranscriber()


@pytest.fixture
def dictation():
    return RecordingDictation()


@pytest.fixture
def state():
    return SharedState(McpConfig())


@pytest.fixture
def handlers(state, history, profiles, glossary, transcriber, dictation):
    local = LocalToolHandlers(
        history=history,
        profiles=profiles,
        glossary=glossary,
        transcriber=transcriber,
        events=state.events,
        dictation=dictation,
    )
    local.register(state.registry)
    return local


@pytest.fixture
def dispatcher(state, handlers):
    return ToolDispatcher(state.registry)
