"""marketchat configuration.

Loads settings from two YAML files:
  * marketchat.settings.yaml: non-secret configuration
  * marketchat.secrets.yaml: secrets (never committed)

Defaults mirror the marketplace web client: five reconnection attempts,
1s initial backoff capped at 5s, 10s connect timeout.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("marketchat.settings.yaml")
SECRETS_FILE  = Path("marketchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    access_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ConnectionSettings(BaseModel):
    url:                     str   = "ws://localhost:8000/ws/chat"
    connect_timeout_seconds: float = 10.0
    max_reconnect_attempts:  int   = 5
    backoff_base_seconds:    float = 1.0
    backoff_max_seconds:     float = 5.0
    backoff_jitter:          float = 0.1

    @field_validator("max_reconnect_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_reconnect_attempts must be >= 1")
        return value


class RoomSettings(BaseModel):
    join_timeout_seconds: float = 5.0


class HistorySettings(BaseModel):
    base_url:        str   = "http://localhost:8000"
    timeout_seconds: float = 10.0
    page_size:       int   = 50


class PresenceSettings(BaseModel):
    typing_ttl_seconds: float = 6.0


class LoggingSettings(BaseModel):
    level: str = "info"


class GatewayUser(BaseModel):
    """A user the reference gateway accepts, keyed by bearer token."""
    id:   str
    name: str = ""
    role: Literal["requester", "provider", "facilitator"] = "requester"


class GatewaySettings(BaseModel):
    host:          str = "0.0.0.0"
    port:          int = 8000
    max_page_size: int = 100
    users:         Dict[str, GatewayUser] = Field(default_factory=dict)


class AppSettings(BaseModel):
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    rooms:      RoomSettings       = Field(default_factory=RoomSettings)
    history:    HistorySettings    = Field(default_factory=HistorySettings)
    presence:   PresenceSettings   = Field(default_factory=PresenceSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    gateway:    GatewaySettings    = Field(default_factory=GatewaySettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_path or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_path or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (connection=%s, history=%s, gateway users=%d)",
        app_settings.connection.url,
        app_settings.history.base_url,
        len(app_settings.gateway.users),
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the cached settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings (used by tests)."""
    global _config
    _config = None
