#!/usr/bin/env python3
"""
Tests for configuration loading and validation.
"""

import textwrap

import pytest
import yaml

from src.config import Configuration
from src.llm.exceptions import ConfigurationMissing

BASE_CONFIG = {
    "llm": {
        "active": "azure",
        "providers": {
            "azure": {
                "endpoint": "https://example.openai.azure.com",
                "model": "gpt-4o",
                "api_version": "2024-06-01",
            },
            "openai": {"base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini"},
        },
    },
    "relay": {
        "endpoint": "http://127.0.0.1:8000/ChatStreaming",
        "http_client": {
            "max_connections": 20,
            "max_keepalive": 10,
            "keepalive_expiry": 30.0,
            "connect_timeout": 10.0,
            "read_timeout": None,
            "write_timeout": 10.0,
            "pool_timeout": 10.0,
        },
    },
    "prompts": {"system": "  system prompt\n", "user": "user prompt\n"},
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "AZURE_OPENAI_API_KEY",
        "OPENAI_API_KEY",
        "AZURE_OPENAI_ENDPOINT",
        "AZURE_OPENAI_DEPLOYMENT",
        "CHAT_RELAY_ENDPOINT",
    ):
        monkeypatch.delenv(key, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.setattr(Configuration, "load_env", staticmethod(lambda: None))


@pytest.fixture
def write_config(tmp_path):
    def _write(data):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
        return Configuration(str(path))
    return _write


def with_changes(**sections):
    data = yaml.safe_load(yaml.safe_dump(BASE_CONFIG))
    data.update(sections)
    return data


class TestDefaultConfig:
    """The shipped config.yaml loads with sensible values."""

    def test_defaults(self):
        config = Configuration()

        assert config.active_provider == "azure"
        assert config.get_console_config() == {
            "output_delay_ms": 33, "command_pause_ms": 1000
        }
        assert config.get_web_config()["route"] == "/ChatStreaming"
        assert config.get_relay_config()["endpoint"].endswith("/ChatStreaming")
        assert config.get_http_client_config()["read_timeout"] is None
        assert config.get_streaming_config() == {
            "enable_recovery": False, "emit_error_events": True
        }
        prompts = config.get_prompts()
        assert prompts["system"] and prompts["user"]

    def test_shipped_azure_endpoint_must_be_provided(self):
        with pytest.raises(ConfigurationMissing) as exc_info:
            Configuration().get_llm_config()
        assert exc_info.value.key == "endpoint"


class TestLLMConfig:
    """Test provider selection."""

    def test_azure_env_overrides(self, write_config, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://override.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "my-deployment")
        config = write_config(BASE_CONFIG)

        llm_config = config.get_llm_config()

        assert llm_config["provider"] == "azure"
        assert llm_config["endpoint"] == "https://override.openai.azure.com"
        assert llm_config["model"] == "my-deployment"
        # Loaded YAML is left untouched
        azure = config.get_config_dict()["llm"]["providers"]["azure"]
        assert azure["model"] == "gpt-4o"

    def test_openai_provider(self, write_config):
        data = with_changes()
        data["llm"]["active"] = "openai"
        llm_config = write_config(data).get_llm_config()

        assert llm_config == {
            "base_url": "https://api.openai.com/v1",
            "model": "gpt-4o-mini",
            "provider": "openai",
        }

    def test_missing_provider_section(self, write_config):
        data = with_changes()
        data["llm"]["active"] = "openai"
        del data["llm"]["providers"]["openai"]

        with pytest.raises(ConfigurationMissing, match="not found in providers"):
            write_config(data).get_llm_config()

    def test_missing_model(self, write_config):
        data = with_changes()
        del data["llm"]["providers"]["azure"]["model"]

        with pytest.raises(ConfigurationMissing) as exc_info:
            write_config(data).get_llm_config()
        assert exc_info.value.key == "model"

    def test_api_key(self, write_config, monkeypatch):
        config = write_config(BASE_CONFIG)
        with pytest.raises(ConfigurationMissing, match="AZURE_OPENAI_API_KEY"):
            config.llm_api_key

        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "secret")
        assert config.llm_api_key == "secret"

    def test_unknown_provider_has_no_api_key(self, write_config):
        data = with_changes()
        data["llm"]["active"] = "bedrock"

        with pytest.raises(ConfigurationMissing, match="no API key mapping"):
            write_config(data).llm_api_key


class TestRelayConfig:
    """Test relay endpoint and HTTP client settings."""

    def test_env_override(self, write_config, monkeypatch):
        monkeypatch.setenv("CHAT_RELAY_ENDPOINT", "https://relay.example/ChatStreaming")
        config = write_config(BASE_CONFIG)
        assert config.get_relay_config()["endpoint"] == "https://relay.example/ChatStreaming"

    def test_missing_endpoint(self, write_config):
        data = with_changes()
        data["relay"]["endpoint"] = ""

        with pytest.raises(ConfigurationMissing, match="relay.endpoint"):
            write_config(data).get_relay_config()

    def test_missing_http_client_key(self, write_config):
        data = with_changes()
        del data["relay"]["http_client"]["pool_timeout"]

        with pytest.raises(ConfigurationMissing) as exc_info:
            write_config(data).get_http_client_config()
        assert exc_info.value.key == "relay.http_client.pool_timeout"

    @pytest.mark.parametrize(
        "key, value, message",
        [
            ("max_connections", 0, "at least 1"),
            ("max_keepalive", 50, "<= max_connections"),
            ("connect_timeout", 0, "must be positive"),
            ("read_timeout", -1, "positive or null"),
        ],
    )
    def test_invalid_http_client_values(self, write_config, key, value, message):
        data = with_changes()
        data["relay"]["http_client"][key] = value

        with pytest.raises(ValueError, match=message):
            write_config(data).get_http_client_config()


class TestOtherSections:
    """Test console, streaming, prompt and web settings."""

    def test_console_defaults_when_absent(self, write_config):
        assert write_config(BASE_CONFIG).get_console_config() == {
            "output_delay_ms": 33, "command_pause_ms": 1000
        }

    def test_negative_console_delay(self, write_config):
        data = with_changes(console={"output_delay_ms": -5})
        with pytest.raises(ValueError, match="output_delay_ms"):
            write_config(data).get_console_config()

    def test_streaming_flags(self, write_config):
        data = with_changes(streaming={"enable_recovery": True, "emit_error_events": False})
        assert write_config(data).get_streaming_config() == {
            "enable_recovery": True, "emit_error_events": False
        }

    def test_prompts_are_stripped(self, write_config):
        assert write_config(BASE_CONFIG).get_prompts() == {
            "system": "system prompt", "user": "user prompt"
        }

    def test_missing_prompt(self, write_config):
        data = with_changes(prompts={"system": "only system"})
        with pytest.raises(ConfigurationMissing, match="prompts.user"):
            write_config(data).get_prompts()

    def test_web_and_logging(self, write_config):
        data = with_changes(web={"port": "9000"}, logging={"level": "DEBUG"})
        config = write_config(data)

        assert config.get_web_config() == {
            "host": "127.0.0.1", "port": 9000, "route": "/ChatStreaming"
        }
        assert config.get_logging_config() == {"level": "DEBUG"}

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(textwrap.dedent("""\
            - just
            - a list
        """), encoding="utf-8")

        with pytest.raises(ValueError, match="YAML dict"):
            Configuration(str(path))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
