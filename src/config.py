# src/config.py
"""
Settings for the Scanflow service and its observer-side monitor.

Values come from the defaults below, then an optional YAML file named by
SCANFLOW_CONFIG, then SCANFLOW_* environment variables.
"""
import os
from functools import lru_cache
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "SCANFLOW_"
CONFIG_FILE_VAR = "SCANFLOW_CONFIG"


class Settings(BaseModel):
    """
    Model defining settings for the Scanflow application.
    """
    #: SQLAlchemy URL of the scan database
    database_url: str = "sqlite:///./scanflow.db"
    #: Log level used by main.py
    log_level: str = "INFO"

    #: Seconds between heartbeats on a job's event stream
    heartbeat_interval: float = Field(15.0, gt=0)
    #: Number of targets a batch scans at the same time
    max_concurrency: int = Field(1, ge=1)

    #: Base URL the monitor uses for snapshots and event streams
    monitor_base_url: str = "http://localhost:8000"
    max_retries: int = Field(3, ge=0)
    retry_interval: float = Field(1.0, gt=0)
    max_retry_delay: float = Field(30.0, gt=0)
    heartbeat_timeout: float = Field(30.0, gt=0)
    sweep_interval: float = Field(60.0, gt=0)
    stale_timeout: float = Field(300.0, gt=0)
    active_poll_interval: float = Field(3.0, gt=0)
    idle_poll_interval: float = Field(30.0, gt=0)
    prune_interval: float = Field(5.0, gt=0)
    success_retention: float = Field(5.0, ge=0)
    failure_retention: float = Field(30.0, ge=0)
    completion_grace: float = Field(2.0, ge=0)

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value):
        return value.upper()


def _env_overrides(environ) -> Dict[str, Any]:
    overrides = {}
    for name in Settings.model_fields:
        var_name = ENV_PREFIX + name.upper()
        if var_name in environ:
            overrides[name] = environ[var_name]
    return overrides


def from_file(config_file: Optional[str], environ=None) -> Settings:
    """
    Build a settings object from a YAML file plus environment overrides.
    """
    environ = os.environ if environ is None else environ
    config: Dict[str, Any] = {}
    if config_file:
        with open(config_file, "r") as f:
            config.update(yaml.safe_load(f) or {})
    config.update(_env_overrides(environ))
    return Settings(**config)


@lru_cache
def get_settings() -> Settings:
    return from_file(os.environ.get(CONFIG_FILE_VAR))
