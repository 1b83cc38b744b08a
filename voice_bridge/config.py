"""Configuration management for the voice bridge."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")

GATEWAY_TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"
WEBSOCKET_TOKEN_ENV = "VOICE_CHAT_WS_TOKEN"


def _millis_to_seconds(value: str) -> float:
    return int(value) / 1000.0


# Environment variable -> (config path, converter)
ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "OPENCLAW_GATEWAY_URL": (("gateway", "url"), str),
    "OPENCLAW_AGENT_ID": (("gateway", "agent_id"), str),
    "VOICE_CHAT_TIMEOUT": (("gateway", "http_client", "read_timeout"), _millis_to_seconds),
    "VOICE_CHAT_PORT": (("server", "port"), int),
    "VOICE_CHAT_BIND": (("server", "host"), str),
    "VOICE_CHAT_SYSTEM": (("bridge", "system_prompt"), str),
    "VOICE_CHAT_AGENT_NAME": (("bridge", "agent_name"), str),
}


class Configuration:
    """Manages configuration and environment variables for the bridge."""

    def __init__(
        self,
        config_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: YAML file to load instead of the bundled config.yaml.
            environ: Environment to read instead of os.environ. When given,
                no .env file is loaded.
        """
        if environ is None:
            self.load_env()  # Load .env for tokens
            environ = os.environ
        self._environ: Mapping[str, str] = environ
        self._config = self._load_yaml_config(config_path or DEFAULT_CONFIG_PATH)
        self._apply_env_overrides()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def _apply_env_overrides(self) -> None:
        """Overlay the documented environment variables onto the YAML values."""
        for env_key, (path, convert) in ENV_OVERRIDES.items():
            raw = self._environ.get(env_key)
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise ValueError(
                    f"Environment variable {env_key}={raw!r} is invalid: {e}"
                ) from e

            section = self._config
            for key in path[:-1]:
                section = section.setdefault(key, {})
            section[path[-1]] = value

    @property
    def gateway_token(self) -> str:
        """Get the bearer token for the gateway.

        Raises:
            ValueError: If the token is not set in the environment.
        """
        token = self._environ.get(GATEWAY_TOKEN_ENV)
        if not token:
            raise ValueError(
                f"{GATEWAY_TOKEN_ENV} is required. Set it to your gateway auth "
                "token (gateway.auth.token in openclaw.json)."
            )
        return token

    @property
    def websocket_token(self) -> str | None:
        """Get the credential WebSocket clients must present, if any.

        Returns:
            The token, or None when connections are not authenticated.
        """
        return self._environ.get(WEBSOCKET_TOKEN_ENV) or None

    def get_gateway_config(self) -> dict[str, Any]:
        """Get gateway configuration with a validated http_client section.

        Raises:
            ValueError: If required gateway parameters are missing or invalid.
        """
        gateway_config = self._config.get("gateway", {})

        required_keys = ["url", "agent_id", "completions_path"]
        for key in required_keys:
            if not gateway_config.get(key):
                raise ValueError(
                    f"gateway.{key} must be explicitly configured in config.yaml"
                )

        if not str(gateway_config["url"]).startswith(("http://", "https://")):
            raise ValueError("gateway.url must be an http:// or https:// URL")
        if not str(gateway_config["completions_path"]).startswith("/"):
            raise ValueError("gateway.completions_path must start with '/'")

        return {
            **gateway_config,
            "http_client": self.get_http_client_config(),
        }

    def get_http_client_config(self) -> dict[str, Any]:
        """Get HTTP client configuration for the gateway.

        Raises:
            ValueError: If required HTTP client parameters are missing or invalid.
        """
        http_config = self._config.get("gateway", {}).get("http_client", {})

        required_keys = [
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
            "max_connections", "max_keepalive",
        ]
        for key in required_keys:
            if key not in http_config:
                raise ValueError(
                    f"gateway.http_client.{key} must be explicitly configured "
                    "in config.yaml"
                )

        for key in ["connect_timeout", "read_timeout", "write_timeout", "pool_timeout"]:
            if http_config[key] <= 0:
                raise ValueError(f"gateway.http_client.{key} must be positive")

        if http_config["max_connections"] < 1:
            raise ValueError("gateway.http_client.max_connections must be at least 1")
        if http_config["max_keepalive"] > http_config["max_connections"]:
            raise ValueError(
                "gateway.http_client.max_keepalive must be <= max_connections"
            )

        return dict(http_config)

    def get_bridge_config(self) -> dict[str, Any]:
        """Get bridge behaviour configuration.

        Raises:
            ValueError: If limits are missing or out of range.
        """
        bridge_config = self._config.get("bridge", {})

        required_keys = ["agent_name", "max_body_bytes", "cancel_grace"]
        for key in required_keys:
            if key not in bridge_config:
                raise ValueError(
                    f"bridge.{key} must be explicitly configured in config.yaml"
                )

        if bridge_config["max_body_bytes"] < 1:
            raise ValueError("bridge.max_body_bytes must be at least 1")
        if bridge_config["cancel_grace"] <= 0:
            raise ValueError("bridge.cancel_grace must be positive")

        return {
            "agent_name": bridge_config["agent_name"],
            "system_prompt": bridge_config.get("system_prompt") or None,
            "max_body_bytes": bridge_config["max_body_bytes"],
            "cancel_grace": bridge_config["cancel_grace"],
        }

    def get_server_config(self) -> dict[str, Any]:
        """Get HTTP/WebSocket server configuration.

        Raises:
            ValueError: If host or port are missing or invalid.
        """
        server_config = self._config.get("server", {})

        for key in ["host", "port"]:
            if key not in server_config:
                raise ValueError(
                    f"server.{key} must be explicitly configured in config.yaml"
                )

        port = server_config["port"]
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError("server.port must be an integer between 1 and 65535")

        return {
            "host": server_config["host"],
            "port": port,
            "cors_origins": list(server_config.get("cors_origins", ["*"])),
            "uvicorn": dict(server_config.get("uvicorn", {})),
        }

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging", {})
