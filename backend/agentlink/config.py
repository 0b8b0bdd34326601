"""agentlink node configuration.

Loads settings from a single YAML file:
  * agentlink.settings.yaml: node settings (path overridable with the
    AGENTLINK_SETTINGS environment variable)

Every node of a cluster must share the same bus channel names, heartbeat
timings and history limits; only ``server`` and ``logging`` are expected to
differ between nodes.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("agentlink.settings.yaml")
SETTINGS_ENV_VAR = "AGENTLINK_SETTINGS"


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
    host:         str  = "0.0.0.0"
    port:         int  = 8000
    reload:       bool = False


class LoggingSettings(BaseModel):
    level: str = "info"


class RedisSettings(BaseModel):
    url:                       str   = "redis://localhost:6379/0"
    operation_timeout_seconds: float = 5.0


class BusSettings(BaseModel):
    """Pub/sub channel names. Must match across all nodes."""
    broadcast_channel:       str   = "broadcast-channel"
    targeted_channel:        str   = "targeted-channel"
    presence_channel:        str   = "presence-channel"
    reassign_channel:        str   = "reassign-channel"
    reconnect_delay_seconds: float = 1.0


class HeartbeatSettings(BaseModel):
    """Heartbeat interval and deferred recheck delay, in milliseconds."""
    interval_ms:    int = 30_000
    check_delay_ms: int = 60_000

    @model_validator(mode="after")
    def _check_delay_exceeds_interval(self) -> "HeartbeatSettings":
        if self.check_delay_ms <= self.interval_ms:
            raise ValueError(
                "heartbeat.check_delay_ms must be greater than heartbeat.interval_ms"
            )
        return self


class PresenceSettings(BaseModel):
    status_ttl_seconds: int = 30
    online_delay_ms:    int = 200


class HistorySettings(BaseModel):
    capacity:          int = 1000
    retention_days:    int = 30
    default_page_size: int = 50
    max_page_size:     int = 100


class DelaySettings(BaseModel):
    """Delayed-delivery queue used for rechecks and deferred presence updates."""
    queue_key:        str = "delay:jobs"
    poll_interval_ms: int = 100
    batch_size:       int = 100


class AppConfig(BaseModel):
    backend:   Literal["redis", "memory"] = "redis"
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    redis:     RedisSettings     = Field(default_factory=RedisSettings)
    bus:       BusSettings       = Field(default_factory=BusSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    presence:  PresenceSettings  = Field(default_factory=PresenceSettings)
    history:   HistorySettings   = Field(default_factory=HistorySettings)
    delay:     DelaySettings     = Field(default_factory=DelaySettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML into an *AppConfig* object.

    Resolution order for the file: explicit ``settings_path``, the
    ``AGENTLINK_SETTINGS`` environment variable, then ``agentlink.settings.yaml``
    in the working directory.
    """
    if settings_path is None:
        env_path = os.environ.get(SETTINGS_ENV_VAR)
        settings_path = Path(env_path) if env_path else SETTINGS_FILE

    data = _load_yaml(Path(settings_path))
    config = AppConfig(**data)
    logger.info(
        "Settings loaded (backend=%s, server=%s:%s, heartbeat=%sms/%sms)",
        config.backend,
        config.server.host,
        config.server.port,
        config.heartbeat.interval_ms,
        config.heartbeat.check_delay_ms,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with None) the process-wide config."""
    global _config
    _config = config
