"""Tests for whispo.core.config: configuration models and loading."""

import pytest
import yaml

from whispo.core.config import (
    ContextAwarenessConfig,
    McpConfig,
    ProviderConfig,
    ServerConfig,
    TimingConfig,
    WhispoConfig,
)

_ENV_VARS = [
    "WHISPO_MCP_ENABLED",
    "WHISPO_SERVER_ENABLED",
    "WHISPO_SERVER_HOST",
    "WHISPO_SERVER_PORT",
    "WHISPO_SERVER_AUTH_TOKEN",
    "WHISPO_CALL_TIMEOUT_SEC",
    "WHISPO_CONTEXT_BUDGET_SEC",
    "WHISPO_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_from_env_defaults(self):
        config = WhispoConfig.from_env()
        assert config.mcp.enabled is False
        assert config.mcp.providers == []
        assert config.mcp.server.enabled is False
        assert config.mcp.server.host == "127.0.0.1"
        assert config.mcp.server.port == 7420
        assert config.mcp.server.path == "/mcp"
        assert config.mcp.server.auth_token is None
        assert config.mcp.timing.call_timeout_seconds == 10.0
        assert config.mcp.context.budget_seconds == 1.5
        assert config.log_level == "info"

    def test_context_defaults(self):
        cfg = ContextAwarenessConfig()
        assert cfg.provider_tools == ["get_context", "get_active_file", "get_project_info"]
        assert cfg.use_glossary and cfg.use_file_context


class TestTimingConfig:
    def test_backoff_doubles_and_caps(self):
        timing = TimingConfig()
        assert [timing.backoff_delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]
        assert timing.backoff_delay(10) == 30.0
        assert timing.reconnect_max_attempts == 5


class TestEnvOverrides:
    def test_env_values_override_defaults(self, monkeypatch):
        monkeypatch.setenv("WHISPO_MCP_ENABLED", "true")
        monkeypatch.setenv("WHISPO_SERVER_ENABLED", "1")
        monkeypatch.setenv("WHISPO_SERVER_HOST", "0.0.0.0")
        monkeypatch.setenv("WHISPO_SERVER_PORT", "9000")
        monkeypatch.setenv("WHISPO_SERVER_AUTH_TOKEN", "tok")
        monkeypatch.setenv("WHISPO_CALL_TIMEOUT_SEC", "2.5")
        monkeypatch.setenv("WHISPO_CONTEXT_BUDGET_SEC", "0.75")
        monkeypatch.setenv("WHISPO_LOG_LEVEL", "debug")

        config = WhispoConfig.from_env()
        assert config.mcp.enabled is True
        assert config.mcp.server.enabled is True
        assert config.mcp.server.host == "0.0.0.0"
        assert config.mcp.server.port == 9000
        assert config.mcp.server.auth_token == "tok"
        assert config.mcp.timing.call_timeout_seconds == 2.5
        assert config.mcp.context.budget_seconds == 0.75
        assert config.log_level == "debug"

    @pytest.mark.parametrize("value", ["abc", "-1", "0", ""])
    def test_invalid_numbers_keep_defaults(self, monkeypatch, value):
        monkeypatch.setenv("WHISPO_CALL_TIMEOUT_SEC", value)
        monkeypatch.setenv("WHISPO_SERVER_PORT", value or "70000")
        config = WhispoConfig.from_env()
        assert config.mcp.timing.call_timeout_seconds == 10.0
        assert config.mcp.server.port == 7420


class TestYamlLoading:
    def test_from_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "whispo.yaml"
        path.write_text(yaml.safe_dump({
            "log_level": "warning",
            "mcp": {
                "enabled": True,
                "providers": [
                    {"name": "git", "command": "git-mcp", "args": ["--repo", "."]},
                    {"name": "fs", "command": "fs-mcp", "enabled": False, "call_timeout_seconds": 3},
                ],
                "server": {"enabled": True, "port": 7500, "path": "rpc"},
                "context": {"max_context_length": 1000},
            },
        }), encoding="utf-8")
        monkeypatch.setenv("WHISPO_SERVER_PORT", "7600")

        config = WhispoConfig.from_yaml(str(path))
        assert config.log_level == "warning"
        assert [p.name for p in config.mcp.active_providers()] == ["git"]
        fs = next(p for p in config.mcp.providers if p.name == "fs")
        assert fs.call_timeout_seconds == 3
        assert config.mcp.server.path == "/rpc"
        assert config.mcp.server.port == 7600
        assert config.mcp.context.max_context_length == 1000

    def test_missing_file_falls_back_to_env(self, tmp_path):
        config = WhispoConfig.from_yaml(str(tmp_path / "absent.yaml"))
        assert config == WhispoConfig.from_env()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert WhispoConfig.from_yaml(str(path)).mcp.enabled is False


class TestValidation:
    def test_reserved_and_invalid_provider_names(self):
        for name in ("local", "", "a/b"):
            with pytest.raises(ValueError):
                ProviderConfig(name=name, command="x")

    def test_empty_command(self):
        with pytest.raises(ValueError):
            ProviderConfig(name="git", command="  ")

    def test_duplicate_provider_names(self):
        with pytest.raises(ValueError, match="duplicate"):
            McpConfig(providers=[ProviderConfig(name="git", command="a"), ProviderConfig(name="git", command="b")])

    def test_disabled_layer_has_no_active_providers(self):
        config = McpConfig(enabled=False, providers=[ProviderConfig(name="git", command="a")])
        assert config.active_providers() == []

    def test_server_port_range(self):
        with pytest.raises(ValueError):
            ServerConfig(port=0)

    def test_summary_masks_token(self):
        config = WhispoConfig(mcp=McpConfig(server=ServerConfig(auth_token="secret")))
        assert config.summary()["mcp"]["server"]["auth_token"] == "***"
        assert config.mcp.server.auth_token == "secret"
