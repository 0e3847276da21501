"""Agent configuration and the local credentials file."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import ValidationError

from phonebackend._constants import (
    CREDENTIALS_FILENAME,
    DATA_DIRNAME,
    DATABASE_FILENAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_ROUTING_URL,
    HEARTBEAT_INTERVAL_SECONDS,
)
from phonebackend.exceptions import ConfigError
from phonebackend.models.credentials import Credentials
from phonebackend.store import CoercionPolicy

_logger = logging.getLogger(__name__)


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class PhoneBackendConfig:
    """Agent configuration.

    Parameters
    ----------
    routing_url : str
        Base URL of the routing service. ``http(s)`` selects the
        Socket.IO relay, ``mqtt(s)`` the MQTT relay.
    config_dir : Path
        Directory holding the credentials file and the data directory.
    heartbeat_interval : float
        Seconds between ``heartbeat`` events while connected.
    strict_paths : bool
        Reject writes through non-object nodes instead of replacing them.
    reconnect_min_delay : float
        First reconnect delay in seconds.
    reconnect_max_delay : float
        Upper bound for the growing reconnect delay.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_topic_prefix : str
        Topic prefix for the MQTT relay (``<prefix>/<username>/in|out``).
    event_queue_size : int
        Capacity of the inbound event queue.
    """

    routing_url: str = DEFAULT_ROUTING_URL
    config_dir: Path = dataclasses.field(default_factory=lambda: Path(DEFAULT_CONFIG_DIR).expanduser())
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    strict_paths: bool = False
    reconnect_min_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    mqtt_keepalive: int = 60
    mqtt_topic_prefix: str = "phone-backend"
    event_queue_size: int = 256

    def __post_init__(self) -> None:
        parts = urlsplit(self.routing_url)
        if parts.scheme not in {"http", "https", "mqtt", "mqtts"}:
            raise ConfigError(f"Unsupported routing URL scheme: {self.routing_url!r}")
        if not parts.hostname:
            raise ConfigError(f"Routing URL has no host: {self.routing_url!r}")
        if self.heartbeat_interval <= 0:
            raise ConfigError("heartbeat_interval must be positive")
        if not 0 < self.reconnect_min_delay <= self.reconnect_max_delay:
            raise ConfigError("reconnect delays must satisfy 0 < min <= max")
        if self.event_queue_size < 1:
            raise ConfigError("event_queue_size must be >= 1")

    @property
    def data_file(self) -> Path:
        return self.config_dir / DATA_DIRNAME / DATABASE_FILENAME

    @property
    def credentials_file(self) -> Path:
        return self.config_dir / CREDENTIALS_FILENAME

    @property
    def coercion_policy(self) -> CoercionPolicy:
        return CoercionPolicy.REJECT if self.strict_paths else CoercionPolicy.OVERWRITE

    def api_url(self, username: str) -> str:
        """Public URL callers use to reach this agent through the router."""
        return f"{self.routing_url.rstrip('/')}/api/u/{username}"

    @classmethod
    def from_env(cls, **overrides: Any) -> PhoneBackendConfig:
        """Create configuration from environment variables.

        Reads ``ROUTING_URL`` and ``PHONE_BACKEND_*`` variables. Explicit
        keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        routing_url = env.get("PHONE_BACKEND_ROUTING_URL") or env.get("ROUTING_URL")
        if routing_url:
            config_kwargs["routing_url"] = routing_url

        home = env.get("PHONE_BACKEND_HOME")
        if home:
            config_kwargs["config_dir"] = Path(home).expanduser()

        _ENV_NUMERIC_MAP: dict[str, tuple[str, type]] = {
            "PHONE_BACKEND_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
            "PHONE_BACKEND_RECONNECT_MIN_DELAY": ("reconnect_min_delay", float),
            "PHONE_BACKEND_RECONNECT_MAX_DELAY": ("reconnect_max_delay", float),
            "PHONE_BACKEND_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
            "PHONE_BACKEND_EVENT_QUEUE_SIZE": ("event_queue_size", int),
        }
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = cast(val)
            except ValueError as exc:
                raise ConfigError(f"{env_key} is not a valid number: {val!r}") from exc

        prefix = env.get("PHONE_BACKEND_MQTT_TOPIC_PREFIX")
        if prefix:
            config_kwargs["mqtt_topic_prefix"] = prefix.strip("/")

        if "strict_paths" not in overrides:
            config_kwargs["strict_paths"] = _env_bool(env.get("PHONE_BACKEND_STRICT_PATHS"), False)

        config_kwargs.update(overrides)
        return cls(**config_kwargs)


def load_credentials(path: Path) -> Credentials | None:
    """Read the credentials written by ``login``; ``None`` if there are none."""
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return Credentials.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Unreadable credentials file {path}: {exc}") from exc


def save_credentials(path: Path, credentials: Credentials) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(credentials.model_dump(mode="json"), indent=2)
    path.write_text(text, encoding="utf-8")
    _logger.debug("Credentials written to %s", path)
