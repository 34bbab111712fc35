"""
Runtime Settings

This module loads the skill runtime settings from a YAML file.

Configuration file format (YAML):
    tool_mode: full              # read_only | full
    pool_size: 1
    keep_warm: true
    default_timeout_s: 300
    handshake_timeout_s: 10
    allow_auto_install: true
    runtime_paths:
      uv: /opt/uv/bin/uv
    restart:
      max_restarts: 5
      window_seconds: 300
    busy_retries: 3
    health:
      interval_seconds: 30
      failure_threshold: 3
      quarantine_threshold: 5
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "SKILLHOST_HOME"
CONFIG_FILENAME = "config.yaml"


def default_home() -> Path:
    """Return the runtime home directory (``$SKILLHOST_HOME`` or ``~/.skillhost``)."""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".skillhost"


class ToolMode(str, Enum):
    """Global tool mode, the final veto over write/execute capabilities"""
    READ_ONLY = "read_only"
    FULL = "full"


class RestartPolicy(BaseModel):
    """
    Restart policy for a supervised skill process

    Attributes:
        max_restarts: Restarts allowed inside one time window
        window_seconds: Length of the sliding window
        backoff_initial_s: Delay before the first restart
        backoff_max_s: Upper bound for the exponential backoff
    """

    max_restarts: int = Field(default=5, description="Restarts allowed per window")
    window_seconds: float = Field(default=300.0, description="Sliding window length")
    backoff_initial_s: float = Field(default=1.0, description="First restart delay")
    backoff_max_s: float = Field(default=60.0, description="Maximum restart delay")

    @field_validator("max_restarts")
    @classmethod
    def validate_max_restarts(cls, v):
        """Validate restart budget is not negative"""
        if v < 0:
            raise ValueError("max_restarts cannot be negative")
        return v

    @field_validator("backoff_initial_s", "backoff_max_s", "window_seconds")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("durations cannot be negative")
        return v

    def backoff_for_attempt(self, attempt: int) -> float:
        """Exponential backoff delay for the given restart attempt (0-based)."""
        if self.backoff_initial_s <= 0:
            return 0.0
        return min(self.backoff_initial_s * (2 ** attempt), self.backoff_max_s)


class HealthSettings(BaseModel):
    """Health monitor settings"""

    interval_seconds: float = Field(default=30.0, description="Probe interval")
    probe_timeout_s: float = Field(default=5.0, description="Budget for one probe")
    slow_threshold_ms: int = Field(default=1000, description="Latency marking a probe slow")
    failure_threshold: int = Field(default=3, description="Unresponsive probes forcing a restart")
    quarantine_threshold: int = Field(default=5, description="Failed probes in a row quarantining a skill")
    auto_quarantine: bool = Field(default=True, description="Quarantine skills that keep failing probes")

    @field_validator("failure_threshold", "quarantine_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if v < 1:
            raise ValueError("thresholds must be at least 1")
        return v


class RuntimeSettings(BaseModel):
    """
    Settings for the skill runtime

    Attributes:
        home: Root directory for persisted state
        tool_mode: Global tool mode (read_only or full)
        pool_size: Maximum concurrent processes per skill
        keep_warm: Keep processes alive between invocations
        default_timeout_s: Default task timeout
        handshake_timeout_s: Deadline for the handshake response
        request_timeout_s: Default deadline for control requests
        approval_timeout_s: Deadline for an interactive approval decision
        stop_grace_s: Time allowed for a graceful shutdown
        abort_grace_s: Time allowed for an abort acknowledgment
        event_queue_depth: Per-session event channel capacity
        event_backlog_limit: Events held beyond the channel before a slow session fails
        busy_retries: Extra attempts to lease a busy skill before BusyError
        busy_retry_delay_s: Pause between those attempts
        allow_auto_install: Whether missing runtimes may be installed
        runtime_paths: Explicit binary paths by runtime kind
    """

    home: Path = Field(default_factory=default_home)
    tool_mode: ToolMode = Field(default=ToolMode.FULL)
    pool_size: int = Field(default=1)
    keep_warm: bool = Field(default=True)
    default_timeout_s: float = Field(default=300.0)
    handshake_timeout_s: float = Field(default=10.0)
    request_timeout_s: float = Field(default=30.0)
    approval_timeout_s: float = Field(default=120.0)
    stop_grace_s: float = Field(default=3.0)
    abort_grace_s: float = Field(default=2.0)
    event_queue_depth: int = Field(default=256)
    event_backlog_limit: int = Field(default=4096)
    busy_retries: int = Field(default=3)
    busy_retry_delay_s: float = Field(default=0.5)
    allow_auto_install: bool = Field(default=True)
    runtime_paths: Dict[str, str] = Field(default_factory=dict)
    restart: RestartPolicy = Field(default_factory=RestartPolicy)
    health: HealthSettings = Field(default_factory=HealthSettings)

    @field_validator("pool_size", "event_queue_depth")
    @classmethod
    def validate_positive_int(cls, v):
        """Validate pool and queue sizes are positive"""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("event_backlog_limit", "busy_retries", "busy_retry_delay_s")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("cannot be negative")
        return v

    @field_validator(
        "default_timeout_s",
        "handshake_timeout_s",
        "request_timeout_s",
        "approval_timeout_s",
    )
    @classmethod
    def validate_timeout(cls, v):
        """Validate timeout is positive"""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def db_path(self) -> Path:
        return self.home / "skillhost.sqlite"

    @property
    def cache_dir(self) -> Path:
        return self.home / "cache"


def load_settings(config_path: Optional[Path] = None) -> RuntimeSettings:
    """
    Load runtime settings from YAML

    Args:
        config_path: Path to the config file (default: <home>/config.yaml)

    Returns:
        RuntimeSettings (defaults when the file is missing)

    Raises:
        ValueError: If the file exists but is not a valid settings document
    """
    path = config_path or (default_home() / CONFIG_FILENAME)

    if not path.exists():
        logger.warning(f"Config file not found: {path}. Using default settings.")
        return RuntimeSettings()

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must be a YAML mapping: {path}")

    settings = RuntimeSettings(**data)
    logger.info(f"Loaded runtime settings from {path} (tool_mode={settings.tool_mode.value})")
    return settings
