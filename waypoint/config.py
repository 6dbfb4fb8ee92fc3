from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, field_validator

from .constants import DEFAULT_RETRY_DELAY_SECONDS
from .contracts import ErrorAction


class CheckpointConfig(BaseModel):
    """Where the resume snapshot is stored."""

    location: Optional[str] = None


class LoggingConfig(BaseModel):
    """Console and run-log settings."""

    level: str = "INFO"
    directory: Optional[str] = None


class EventsConfig(BaseModel):
    """Event channel settings."""

    backend: Literal["inmemory", "logging", "null"] = "inmemory"

    @field_validator("backend", mode="before")
    @classmethod
    def _yaml_null(cls, value):
        # an unquoted `null` in YAML arrives as None
        return "null" if value is None else value


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    error_action: ErrorAction = ErrorAction.STOP
    default_retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    checkpoint: CheckpointConfig = CheckpointConfig()
    logging: LoggingConfig = LoggingConfig()
    events: EventsConfig = EventsConfig()


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WAYPOINT_CONFIG env
            variable or 'waypoint.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "waypoint.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_checkpoint = os.getenv("WAYPOINT_CHECKPOINT_PATH")
    if env_checkpoint:
        config.checkpoint.location = env_checkpoint
    env_error_action = os.getenv("WAYPOINT_ERROR_ACTION")
    if env_error_action:
        config.error_action = ErrorAction(env_error_action.capitalize())
    env_log_level = os.getenv("WAYPOINT_LOG_LEVEL")
    if env_log_level:
        config.logging.level = env_log_level.upper()
    return config
