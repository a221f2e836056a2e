"""
Relay and session configuration.

Values come from, lowest priority first:
    1. dataclass defaults
    2. an optional YAML file with ``relay:`` and ``session:`` mappings
    3. EMOJI_RELAY_* environment variables
    4. explicit keyword overrides (the CLI options)

Example file:

    relay:
      host: 0.0.0.0
      port: 1337
      send_timeout: 2.5
    session:
      url: ws://chat.example.org:1337/
      display_name: alice
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

import yaml

from shared.log import get_logger
from shared.utils import build_ws_url, is_ws_url

logger = get_logger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1337
DEFAULT_PATH = "/"
CHAT_SUBPROTOCOL = "chat"


class ConfigError(Exception):
    """Raised when a configuration file or value is unusable."""
    pass


@dataclass(frozen=True)
class RelayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    path: str = DEFAULT_PATH
    subprotocol: str = CHAT_SUBPROTOCOL
    send_timeout: float = 5.0          # per-peer bound on one broadcast write
    ping_interval: Optional[float] = 15.0
    ping_timeout: Optional[float] = 45.0
    max_message_size: int = 64 * 1024

    @property
    def url(self) -> str:
        return build_ws_url(self.host, self.port, self.path)


@dataclass(frozen=True)
class SessionConfig:
    url: str = build_ws_url(DEFAULT_HOST, DEFAULT_PORT, DEFAULT_PATH)
    subprotocol: str = CHAT_SUBPROTOCOL
    display_name: str = ""
    connect_timeout: float = 10.0
    close_timeout: float = 0.0
    ping_interval: Optional[float] = 15.0
    ping_timeout: Optional[float] = 45.0


_ENV_RELAY = {
    "EMOJI_RELAY_HOST": "host",
    "EMOJI_RELAY_PORT": "port",
}
_ENV_SESSION = {
    "EMOJI_RELAY_URL": "url",
    "EMOJI_RELAY_NAME": "display_name",
}

C = TypeVar("C", RelayConfig, SessionConfig)


def _coerce(cls: Type[Any], name: str, value: Any, default: Any) -> Any:
    """Coerce a raw YAML/env value to the type of the field's default."""
    if value is None:
        return None
    try:
        if isinstance(value, bool):
            raise ValueError("booleans are not accepted here")
        if isinstance(default, int):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("not an integer")
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, str):
            if not isinstance(value, (str, int, float)):
                raise ValueError("not a string")
            return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{cls.__name__}.{name}: invalid value {value!r} ({e})")
    return value


def _apply(config: C, values: Dict[str, Any], source: str) -> C:
    known = {f.name: f for f in fields(config)}
    changes: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown %s option %r from %s", type(config).__name__, key, source)
            continue
        changes[key] = _coerce(type(config), key, value, getattr(type(config)(), key))
    return replace(config, **changes) if changes else config


def _env_values(mapping: Dict[str, str]) -> Dict[str, Any]:
    return {attr: os.environ[var] for var, attr in mapping.items() if os.environ.get(var)}


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Error reading {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _section(data: Dict[str, Any], name: str, path: Path) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: '{name}' must be a mapping")
    return section


def validate_relay(config: RelayConfig) -> RelayConfig:
    if not 0 <= config.port <= 65535:
        raise ConfigError(f"Port out of range: {config.port}")
    if not config.path.startswith("/"):
        raise ConfigError(f"Path must start with '/': {config.path!r}")
    if config.send_timeout <= 0:
        raise ConfigError("send_timeout must be positive")
    return config


def validate_session(config: SessionConfig) -> SessionConfig:
    if not is_ws_url(config.url):
        raise ConfigError(f"Not a WebSocket URL: {config.url!r}")
    if config.connect_timeout <= 0:
        raise ConfigError("connect_timeout must be positive")
    if config.close_timeout < 0:
        raise ConfigError("close_timeout must not be negative")
    return config


def load_config(
    path: Optional[Path] = None,
    *,
    relay_overrides: Optional[Dict[str, Any]] = None,
    session_overrides: Optional[Dict[str, Any]] = None,
) -> Tuple[RelayConfig, SessionConfig]:
    """
    Build (RelayConfig, SessionConfig) from defaults, an optional YAML
    file, the environment and explicit overrides. Overrides whose value is
    None are skipped so unset CLI options do not clobber the file.
    """
    relay = RelayConfig()
    session = SessionConfig()

    if path is not None:
        data = _load_yaml(Path(path))
        relay = _apply(relay, _section(data, "relay", path), str(path))
        session = _apply(session, _section(data, "session", path), str(path))
        logger.debug("Loaded configuration from %s", path)

    relay = _apply(relay, _env_values(_ENV_RELAY), "environment")
    session = _apply(session, _env_values(_ENV_SESSION), "environment")

    if relay_overrides:
        relay = _apply(relay, {k: v for k, v in relay_overrides.items() if v is not None}, "overrides")
    if session_overrides:
        session = _apply(session, {k: v for k, v in session_overrides.items() if v is not None}, "overrides")

    return validate_relay(relay), validate_session(session)
