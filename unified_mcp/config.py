"""
Startup configuration.

Settings are read once from a TOML file, overlaid with environment
variables and CLI flags, and frozen into a GatewayConfig.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

import toml

from unified_mcp import __version__
from unified_mcp.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV = "UNIFIED_MCP_CONFIG"
DEFAULT_CONFIG_FILE = "unified_mcp.toml"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_BRIDGE_COMMAND = ("npx", "mcp-remote", "{url}")
TIMEOUT_RPC = 30.0      # s - forwarded backend calls
SHUTDOWN_GRACE = 3.0    # s - reaping children after SIGTERM

DEFAULT_REPOSITORIES = {
    "context7": "https://gitmcp.io/upstash/context7",
    "n8n-mcp": "https://gitmcp.io/nicknerov/n8n-mcp",
    "n8n-workflows": "https://gitmcp.io/Zie619/n8n-workflows",
}


@dataclass(frozen=True)
class GatewayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    version: str = __version__
    repositories: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_REPOSITORIES))
    )
    bridge_command: Tuple[str, ...] = DEFAULT_BRIDGE_COMMAND
    forward_calls: bool = False
    rpc_timeout: float = TIMEOUT_RPC
    shutdown_grace: float = SHUTDOWN_GRACE

    def with_overrides(self, host: Optional[str] = None, port: Optional[int] = None) -> "GatewayConfig":
        changes: dict = {}
        if host:
            changes["host"] = host
        if port:
            changes["port"] = port
        return replace(self, **changes) if changes else self


def resolve_config_path(path: Optional[str] = None) -> Path:
    return Path(path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Load settings from a TOML file; a missing file means built-in defaults."""
    environ = os.environ if environ is None else environ
    config_file = resolve_config_path(path)
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = toml.load(f)
    except FileNotFoundError:
        logger.info(f"Config file {config_file} not found, using default configuration")
        data = {}
    except toml.TomlDecodeError as e:
        raise ConfigError(f"Error parsing {config_file}: {e}") from e

    config = config_from_dict(data)

    env_port = environ.get("PORT")
    if env_port:
        try:
            config = replace(config, port=int(env_port))
        except ValueError as e:
            raise ConfigError(f"PORT must be an integer, got {env_port!r}") from e
    env_host = environ.get("HOST")
    if env_host:
        config = replace(config, host=env_host)
    return config


def config_from_dict(data: Mapping[str, Any]) -> GatewayConfig:
    server = _table(data, "server")
    bridge = _table(data, "bridge")

    kwargs: dict = {}
    if "host" in server:
        kwargs["host"] = _typed(server["host"], str, "server.host")
    if "port" in server:
        kwargs["port"] = _typed(server["port"], int, "server.port")
    if "version" in server:
        kwargs["version"] = _typed(server["version"], str, "server.version")

    if "command" in bridge:
        command = bridge["command"]
        if isinstance(command, str):
            command = command.split()
        if not command or not all(isinstance(part, str) for part in command):
            raise ConfigError("bridge.command must be a non-empty list of strings")
        kwargs["bridge_command"] = tuple(command)
    if "forward_calls" in bridge:
        kwargs["forward_calls"] = _typed(bridge["forward_calls"], bool, "bridge.forward_calls")
    if "rpc_timeout" in bridge:
        kwargs["rpc_timeout"] = float(_typed(bridge["rpc_timeout"], (int, float), "bridge.rpc_timeout"))
    if "shutdown_grace" in bridge:
        kwargs["shutdown_grace"] = float(_typed(bridge["shutdown_grace"], (int, float), "bridge.shutdown_grace"))

    if "repositories" in data:
        repositories = _table(data, "repositories")
        for name, url in repositories.items():
            if not isinstance(url, str) or not url:
                raise ConfigError(f"repositories.{name} must be a URL string")
            if "_" in name:
                # the first underscore separates backend from action in tool names
                raise ConfigError(f"repository name {name!r} must not contain '_'")
        kwargs["repositories"] = MappingProxyType(dict(repositories))

    return GatewayConfig(**kwargs)


def _table(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{key}] must be a table")
    return value


def _typed(value: Any, expected, label: str) -> Any:
    # bool is an int subclass; keep "port = true" out
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"{label} has an invalid value {value!r}")
    if not isinstance(value, expected):
        raise ConfigError(f"{label} has an invalid value {value!r}")
    return value
