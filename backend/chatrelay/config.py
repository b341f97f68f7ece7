"""Chat relay configuration.

Loads settings from a YAML file:
  * relay.settings.yaml: non-secret configuration

The file location defaults to ``./relay.settings.yaml`` and can be moved with
the ``CHAT_RELAY_SETTINGS`` environment variable. Every section is optional;
missing keys fall back to the defaults below.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SETTINGS_ENV_VAR = "CHAT_RELAY_SETTINGS"
MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class StorageSettings(BaseModel):
    """Conversation store location and call bound."""
    db_path:         str   = "chat_relay.duckdb"
    timeout_seconds: float = 5.0


class PresenceSettings(BaseModel):
    """Accept sockets that connect without a username.

    Anonymous connections can join rooms and receive broadcasts but are never
    tracked in presence and cannot send.
    """
    allow_anonymous: bool = True


class HistorySettings(BaseModel):
    default_page_size: int = 50
    max_page_size:     int = 100

    @model_validator(mode="after")
    def _clamp_default(self) -> "HistorySettings":
        if self.max_page_size < 1:
            raise ValueError("history.max_page_size must be at least 1")
        if self.default_page_size > self.max_page_size:
            self.default_page_size = self.max_page_size
        return self


class LoggingSettings(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"

    @field_validator("level", mode="before")
    @classmethod
    def _lowercase(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    history:  HistorySettings  = Field(default_factory=HistorySettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(config: AppConfig, settings_dir: Path) -> None:
    """Resolve a relative ``storage.db_path`` against the settings file directory."""
    db_path = config.storage.db_path
    if db_path == MEMORY_DB or Path(db_path).is_absolute():
        return
    config.storage.db_path = str(settings_dir / db_path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings into an *AppConfig* object.

    Args:
        settings_path: Explicit settings file. Defaults to the
            ``CHAT_RELAY_SETTINGS`` env var, then ``./relay.settings.yaml``.
    """
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    path = Path(settings_path)

    settings_data = _load_yaml(path)
    config = AppConfig(**settings_data)
    _resolve_db_path(config, path.resolve().parent)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, allow_anonymous=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.presence.allow_anonymous,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (used by tests)."""
    global _config
    _config = None
