"""pairlink application configuration.

Loads settings from two YAML files:
  * pairlink.settings.yaml  — non-secret configuration
  * pairlink.secrets.yaml   — secrets (never committed)

Either path can be overridden with the PAIRLINK_SETTINGS / PAIRLINK_SECRETS
environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("pairlink.settings.yaml")
SECRETS_FILE  = Path("pairlink.secrets.yaml")

GIB = 1024 * 1024 * 1024


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class TurnSecrets(BaseModel):
    shared_secret: str = ""


class RedisSecrets(BaseModel):
    password: Optional[str] = None


class Secrets(BaseModel):
    turn:  TurnSecrets  = Field(default_factory=TurnSecrets)
    redis: RedisSecrets = Field(default_factory=RedisSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:      str  = "0.0.0.0"
    port:      int  = 8000
    reload:    bool = False
    log_level: str  = "info"


class RedisSettings(BaseModel):
    url:            str   = "redis://localhost:6379/0"
    socket_timeout: float = 5.0


class TurnPorts(BaseModel):
    udp: int = 3478
    tcp: int = 3478
    tls: int = 5349


class TurnSettings(BaseModel):
    """Relay server addressing, credential lifetime and per-user limits."""
    server_url:               str  = ""
    realm:                    str  = "pairlink"
    ttl_seconds:              int  = Field(default=86400, gt=0)
    enable_quota:             bool = False
    quota_gb_per_day:         float = Field(default=1, gt=0)
    enable_connection_limit:  bool = False
    max_connections_per_user: int  = Field(default=5, ge=0)
    enable_udp:               bool = True
    enable_tcp:               bool = True
    enable_tls:               bool = False
    ports:                    TurnPorts = Field(default_factory=TurnPorts)
    stun_urls: List[str] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])

    @property
    def quota_bytes_per_day(self) -> int:
        return int(self.quota_gb_per_day * GIB)


class RateLimitScope(BaseModel):
    points:         int = Field(..., gt=0)
    duration:       int = Field(..., gt=0)
    block_duration: int = Field(..., gt=0)


class RateLimitSettings(BaseModel):
    enabled: bool           = True
    user:    RateLimitScope = Field(
        default_factory=lambda: RateLimitScope(points=30, duration=60, block_duration=300)
    )
    origin:  RateLimitScope = Field(
        default_factory=lambda: RateLimitScope(points=100, duration=60, block_duration=600)
    )


class ReaperSettings(BaseModel):
    enabled:                    bool  = True
    interval_seconds:           float = Field(default=30, gt=0)
    zombie_timeout_seconds:     float = Field(default=90, gt=0)
    heartbeat_interval_seconds: float = Field(default=25, gt=0)

    @model_validator(mode="after")
    def _timeout_exceeds_heartbeat(self) -> "ReaperSettings":
        if self.zombie_timeout_seconds <= self.heartbeat_interval_seconds:
            raise ValueError(
                "reaper.zombie_timeout_seconds must be greater than "
                "reaper.heartbeat_interval_seconds"
            )
        return self


class MonitorSettings(BaseModel):
    stats_ttl_seconds:        int = 86400
    failure_log_size:         int = 1000
    failure_ttl_seconds:      int = 86400 * 7
    active_window_seconds:    int = 300
    retention_seconds:        int = 3600
    cleanup_interval_seconds: int = 3600


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if getattr(logging, value.upper(), None) is None:
            raise ValueError(f"Unknown log level: {value}")
        return value


class AppSettings(BaseModel):
    server:     ServerSettings    = Field(default_factory=ServerSettings)
    redis:      RedisSettings     = Field(default_factory=RedisSettings)
    turn:       TurnSettings      = Field(default_factory=TurnSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    reaper:     ReaperSettings    = Field(default_factory=ReaperSettings)
    monitor:    MonitorSettings   = Field(default_factory=MonitorSettings)
    logging:    LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:    Secrets           = Field(default_factory=Secrets)

    @model_validator(mode="after")
    def _relay_needs_secret(self) -> "AppSettings":
        # A configured relay server is useless without a secret it shares with us.
        if self.turn.server_url and len(self.secrets.turn.shared_secret) < 8:
            raise ValueError(
                "secrets.turn.shared_secret must be at least 8 characters "
                "when turn.server_url is configured"
            )
        return self


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path or os.getenv("PAIRLINK_SETTINGS") or SETTINGS_FILE)
    secrets_path  = Path(secrets_path or os.getenv("PAIRLINK_SECRETS") or SECRETS_FILE)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, relay=%s, quota=%s, connection_limit=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.turn.server_url or "disabled",
        app_settings.turn.enable_quota,
        app_settings.turn.enable_connection_limit,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached settings (used by tests)."""
    global _config
    _config = None
