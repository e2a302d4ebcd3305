"""chatsync client configuration.

Loads settings from a single YAML file:
  * chatsync.settings.yaml: endpoints, page sizes, logging

A missing file is not an error; every section has working defaults for a
resource server running on localhost.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatsync.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ApiSettings(BaseModel):
    base_url:        str   = "http://localhost:5000/api"
    timeout_seconds: float = 10.0
    verify_tls:      bool  = True


class ChannelSettings(BaseModel):
    enabled:              bool  = True
    url:                  str   = "ws://localhost:5000/ws"
    open_timeout_seconds: float = 10.0


class PaginationSettings(BaseModel):
    """Page sizes used when callers do not pass an explicit limit."""
    chat_page_size:    int = 50
    message_page_size: int = 50
    max_page_size:     int = 100

    @field_validator("chat_page_size", "message_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page sizes must be >= 1")
        return value

    @model_validator(mode="after")
    def _clamp_to_max(self) -> "PaginationSettings":
        self.chat_page_size = min(self.chat_page_size, self.max_page_size)
        self.message_page_size = min(self.message_page_size, self.max_page_size)
        return self

    def clamp(self, limit: Optional[int], default: int) -> int:
        """Resolve a caller-supplied limit against the configured bounds."""
        if not limit or limit < 1:
            return default
        return min(limit, self.max_page_size)


class NoticeSettings(BaseModel):
    max_notices: int = 20


class LoggingSettings(BaseModel):
    level: str = "info"


class ClientSettings(BaseModel):
    api:        ApiSettings        = Field(default_factory=ApiSettings)
    channel:    ChannelSettings    = Field(default_factory=ChannelSettings)
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    notices:    NoticeSettings     = Field(default_factory=NoticeSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path] = None) -> ClientSettings:
    """Load *ClientSettings* from YAML, falling back to defaults."""
    settings_data = _load_yaml(Path(path) if path else SETTINGS_FILE)

    client_settings = ClientSettings(**settings_data)
    logger.info(
        "Settings loaded (api=%s, channel.enabled=%s, chat_page_size=%s, message_page_size=%s)",
        client_settings.api.base_url,
        client_settings.channel.enabled,
        client_settings.pagination.chat_page_size,
        client_settings.pagination.message_page_size,
    )
    return client_settings


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_config: Optional[ClientSettings] = None


def get_config() -> ClientSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(settings: ClientSettings) -> None:
    """Set (or replace) the process-wide settings."""
    global _config
    _config = settings


def reset_config() -> None:
    global _config
    _config = None
