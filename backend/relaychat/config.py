"""Relaychat application configuration.

Loads settings from two YAML files:
  * relaychat.settings.yaml: non-secret configuration
  * relaychat.secrets.yaml: secrets (never committed)
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relaychat.settings.yaml")
SECRETS_FILE  = Path("relaychat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3001
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class DatabaseSettings(BaseModel):
    path: str = "relaychat.duckdb"


class AuthSettings(BaseModel):
    token_expire_days:   int = 7
    min_password_length: int = 6


class PresenceSettings(BaseModel):
    """Duplicate-session policy for the presence registry."""
    evict_duplicate_sessions: bool = True


class MetricsSettings(BaseModel):
    """Round-trip sample window sizes."""
    window_size:    int = 20
    average_window: int = 10

    @field_validator("window_size", "average_window")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("window sizes must be at least 1")
        return value


class HistorySettings(BaseModel):
    conversation_limit:         int = 100
    recent_conversations_limit: int = 20
    broadcast_history_limit:    int = 100


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    metrics:  MetricsSettings  = Field(default_factory=MetricsSettings)
    history:  HistorySettings  = Field(default_factory=HistorySettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, evict_duplicates=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.presence.evict_duplicate_sessions,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""
    global _config
    _config = config
