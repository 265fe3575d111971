import os
import re
from pathlib import Path

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator


def _substitute_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with environment variable values."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_val = os.environ.get(var_name)
        if env_val is None:
            raise ValueError(f"Environment variable {var_name!r} is not set")
        return env_val

    return re.sub(r"\$\{([^}]+)}", replacer, value)


def _walk_and_substitute(obj: object) -> object:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_substitute(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_substitute(item) for item in obj]
    return obj


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 9000


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v


class PrometheusFrontendConfig(BaseModel):
    namespace: str = "hems"


class FrontendConfig(BaseModel):
    type: str = "prometheus"
    prometheus: PrometheusFrontendConfig = Field(default_factory=PrometheusFrontendConfig)


class WiSunConfig(BaseModel):
    device: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    read_timeout: float = Field(default=10.0, gt=0)
    scan_timeout: float = Field(default=60.0, gt=0)
    min_scan_duration: int = Field(default=6, ge=0, le=14)
    password: str
    route_id: str
    schedule: str = "0,30 * * * *"
    refresh_seconds: float = Field(default=5.0, gt=0)
    connect_retry_count: int = Field(default=5, ge=1)
    restart_delay: float = Field(default=5.0, ge=0)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) != 12:
            raise ValueError("password must be 12 characters")
        return v

    @field_validator("route_id")
    @classmethod
    def validate_route_id(cls, v: str) -> str:
        v = v.upper()
        if len(v) != 32 or not all(c in "0123456789ABCDEF" for c in v):
            raise ValueError("route_id must be 32 hex characters")
        return v

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"schedule {v!r} is not a valid cron expression")
        return v


class BackendConfig(BaseModel):
    type: str = "wisun"
    wisun: WiSunConfig | None = None

    @model_validator(mode="after")
    def require_wisun_section(self) -> "BackendConfig":
        if self.type == "wisun" and self.wisun is None:
            raise ValueError("backend type 'wisun' requires a 'wisun' section")
        return self


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    frontend: FrontendConfig = Field(default_factory=FrontendConfig)
    backend: BackendConfig


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    with path.open() as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    raw = _walk_and_substitute(raw)
    return AppConfig.model_validate(raw)
