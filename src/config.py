"""Configuration management for the chat completions relay."""

import os
from typing import Any

import yaml
from dotenv import load_dotenv

from src.llm.exceptions import ConfigurationMissing

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")


class Configuration:
    """Manages configuration and environment variables for the relay."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = self._load_yaml_config(self.config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path, encoding="utf-8") as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @property
    def active_provider(self) -> str:
        """Name of the active LLM provider."""
        return self._config.get("llm", {}).get("active", "azure")

    @property
    def llm_api_key(self) -> str:
        """Get the API key for the active LLM provider.

        Returns:
            The API key as a string.

        Raises:
            ConfigurationMissing: If the API key is not found in environment
                variables.
        """
        provider_key_map = {
            "azure": "AZURE_OPENAI_API_KEY",
            "openai": "OPENAI_API_KEY",
        }

        active_provider = self.active_provider
        env_key = provider_key_map.get(active_provider)
        if not env_key:
            raise ConfigurationMissing(
                f"Unknown provider '{active_provider}' - no API key mapping found",
                key="llm.active",
            )

        api_key = os.getenv(env_key)
        if not api_key:
            raise ConfigurationMissing(
                f"API key '{env_key}' not found in environment variables "
                f"for provider '{active_provider}'",
                key=env_key,
                provider=active_provider,
            )

        return api_key

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_llm_config(self) -> dict[str, Any]:
        """Get active LLM provider configuration from YAML.

        Environment variables AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT
        override the Azure endpoint and model.

        Returns:
            Active provider configuration, with a `provider` key added.

        Raises:
            ConfigurationMissing: If the provider or a required key is missing.
        """
        active_provider = self.active_provider
        providers = self._config.get("llm", {}).get("providers", {})

        if active_provider not in providers:
            raise ConfigurationMissing(
                f"Active provider '{active_provider}' not found in providers config",
                key=f"llm.providers.{active_provider}",
            )

        # Create new dictionary without mutating the original
        result_config = {**(providers[active_provider] or {}), "provider": active_provider}

        required_keys = ["model"]
        if active_provider == "azure":
            if endpoint := os.getenv("AZURE_OPENAI_ENDPOINT"):
                result_config["endpoint"] = endpoint
            if deployment := os.getenv("AZURE_OPENAI_DEPLOYMENT"):
                result_config["model"] = deployment
            required_keys += ["endpoint", "api_version"]

        for key in required_keys:
            if not result_config.get(key):
                raise ConfigurationMissing(
                    f"llm.providers.{active_provider}.{key} must be explicitly "
                    "configured in config.yaml",
                    key=key,
                    provider=active_provider,
                )

        return result_config

    def get_relay_config(self) -> dict[str, Any]:
        """Get relay API configuration.

        The CHAT_RELAY_ENDPOINT environment variable overrides the endpoint.

        Raises:
            ConfigurationMissing: If no endpoint is configured.
        """
        relay_config = {**self._config.get("relay", {})}
        if endpoint := os.getenv("CHAT_RELAY_ENDPOINT"):
            relay_config["endpoint"] = endpoint

        if not relay_config.get("endpoint"):
            raise ConfigurationMissing(
                "relay.endpoint must be explicitly configured in config.yaml "
                "or via CHAT_RELAY_ENDPOINT",
                key="relay.endpoint",
            )

        return relay_config

    def get_http_client_config(self) -> dict[str, Any]:
        """Get shared HTTP client configuration.

        Returns:
            HTTP client configuration dictionary with validated values.

        Raises:
            ConfigurationMissing: If a required parameter is missing.
            ValueError: If a parameter is invalid.
        """
        http_config = self._config.get("relay", {}).get("http_client", {})

        required_keys = [
            "max_connections", "max_keepalive", "keepalive_expiry",
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
        ]
        for key in required_keys:
            if key not in http_config:
                raise ConfigurationMissing(
                    f"relay.http_client.{key} must be explicitly configured "
                    "in config.yaml",
                    key=f"relay.http_client.{key}",
                )

        max_conn = http_config["max_connections"]
        max_keepalive = http_config["max_keepalive"]

        if max_conn < 1:
            raise ValueError("http_client.max_connections must be at least 1")
        if max_keepalive > max_conn:
            raise ValueError("http_client.max_keepalive must be <= max_connections")
        for key in ("connect_timeout", "write_timeout", "pool_timeout"):
            if http_config[key] <= 0:
                raise ValueError(f"http_client.{key} must be positive")
        # A null read timeout keeps long-lived streams open
        read_timeout = http_config["read_timeout"]
        if read_timeout is not None and read_timeout <= 0:
            raise ValueError("http_client.read_timeout must be positive or null")

        return http_config

    def get_console_config(self) -> dict[str, Any]:
        """Get console presentation configuration.

        Raises:
            ValueError: If a delay is negative.
        """
        console_config = self._config.get("console", {})
        result_config = {
            "output_delay_ms": console_config.get("output_delay_ms", 33),
            "command_pause_ms": console_config.get("command_pause_ms", 1000),
        }

        for key, value in result_config.items():
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"console.{key} must be a non-negative integer")

        return result_config

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming relay behaviour configuration."""
        streaming_config = self._config.get("streaming", {})
        return {
            "enable_recovery": bool(streaming_config.get("enable_recovery", False)),
            "emit_error_events": bool(
                streaming_config.get("emit_error_events", True)
            ),
        }

    def get_prompts(self) -> dict[str, str]:
        """Get the system and default user prompts.

        Raises:
            ConfigurationMissing: If a prompt is missing.
        """
        prompts = self._config.get("prompts", {})
        for key in ("system", "user"):
            if not prompts.get(key):
                raise ConfigurationMissing(
                    f"prompts.{key} must be explicitly configured in config.yaml",
                    key=f"prompts.{key}",
                )
        return {"system": prompts["system"].strip(), "user": prompts["user"].strip()}

    def get_web_config(self) -> dict[str, Any]:
        """Get web server configuration."""
        web_config = self._config.get("web", {})
        return {
            "host": web_config.get("host", "127.0.0.1"),
            "port": int(web_config.get("port", 8000)),
            "route": web_config.get("route", "/ChatStreaming"),
        }

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return {"level": "INFO", **self._config.get("logging", {})}
