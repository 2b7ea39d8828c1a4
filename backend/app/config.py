"""Chat service configuration.

Loads settings from two YAML files:
  * chat.settings.yaml : non-secret configuration
  * chat.secrets.yaml  : secrets (never committed)

Either path can be overridden with ``CHAT_SETTINGS_FILE`` /
``CHAT_SECRETS_FILE``. A missing file is not an error; every field has a
default suitable for local development (in-memory store and KV).
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SECRETS_FILE  = Path("chat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class MongoSecrets(BaseModel):
    url: str = "mongodb://localhost:27017"


class RedisSecrets(BaseModel):
    url: str = "redis://localhost:6379/0"


class AdminSecrets(BaseModel):
    # Empty disables the admin endpoints entirely.
    api_key: str = ""


class Secrets(BaseModel):
    mongodb: MongoSecrets = Field(default_factory=MongoSecrets)
    redis:   RedisSecrets = Field(default_factory=RedisSecrets)
    admin:   AdminSecrets = Field(default_factory=AdminSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    api_prefix:      str       = "/api"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class DatabaseSettings(BaseModel):
    backend:         Literal["memory", "mongo"] = "memory"
    name:            str   = "chat"
    timeout_seconds: float = 10.0


class KVSettings(BaseModel):
    backend:         Literal["memory", "redis"] = "memory"
    timeout_seconds: float = 5.0


class AuthSettings(BaseModel):
    token_cache_ttl_seconds:  int   = 15 * 60
    client_cache_ttl_seconds: int   = 60 * 60
    request_timeout_seconds:  float = 10.0
    error_body_limit:         int   = 512


class WebSocketSettings(BaseModel):
    send_queue_size:          int   = 256
    presence_ttl_seconds:     int   = 24 * 60 * 60
    shutdown_timeout_seconds: float = 10.0
    relay_enabled:            bool  = False
    relay_channel:            str   = "ws:events"


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    database:  DatabaseSettings  = Field(default_factory=DatabaseSettings)
    kv:        KVSettings        = Field(default_factory=KVSettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = settings_file or Path(os.environ.get("CHAT_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = secrets_file or Path(os.environ.get("CHAT_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, kv=%s, relay=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.backend,
        app_settings.kv.backend,
        app_settings.websocket.relay_enabled,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget the cached settings so the next ``get_config`` reloads them."""
    global _config
    _config = None
