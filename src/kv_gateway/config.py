"""Configuration loading with environment variable substitution."""

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from kv_gateway.auth.gate import DEFAULT_TIMESTAMP_TOLERANCE_MS
from kv_gateway.backends.cloudflare_api import DEFAULT_BASE_URL

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} patterns with environment variables."""
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable {var_name} is not set")
            return env_value

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(v) for v in value]
    return value


class AuthConfig(BaseModel):
    """Shared-secret authentication settings."""

    secret_key: str | None = None
    timestamp_tolerance_ms: int = Field(default=DEFAULT_TIMESTAMP_TOLERANCE_MS, gt=0)
    public_paths: list[str] = Field(default_factory=list)


class CloudflareConfig(BaseModel):
    """Cloudflare API credentials shared by the KV and D1 backends."""

    account_id: str | None = None
    namespace_id: str | None = None  # Workers KV
    api_token: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 30.0


class DatabaseConfig(BaseModel):
    """SQL backend for the relational storage."""

    backend: str = "sqlite"  # sqlite | cloudflare_d1
    path: str | None = None  # For SQLite
    database_id: str | None = None  # For D1


class StorageConfig(BaseModel):
    """Storage backend selection."""

    backend: str = "memory"  # cloudflare_kv | relational | memory
    cloudflare: CloudflareConfig = Field(default_factory=CloudflareConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cleanup_interval_seconds: float = Field(default=0, ge=0)  # 0 disables the sweeper


class BulkConfig(BaseModel):
    """Bulk write retry and fan-out settings."""

    max_attempts: int = Field(default=3, ge=1)
    retry_delays_seconds: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0])
    max_concurrency: int | None = Field(default=50, ge=1)

    @field_validator("retry_delays_seconds")
    @classmethod
    def _non_empty_delays(cls, value: list[float]) -> list[float]:
        if not value or any(d < 0 for d in value):
            raise ValueError("retry_delays_seconds must be a non-empty list of non-negative numbers")
        return value


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8787
    base_path: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=list)

    @field_validator("base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        value = value.strip()
        if not value or value == "/":
            return ""
        return "/" + value.strip("/")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"  # json | text


class Config(BaseModel):
    """Main configuration for kv-gateway."""

    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        data = substitute_env_vars(data or {})
        return cls.model_validate(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Load configuration from a dictionary."""
        data = substitute_env_vars(data)
        return cls.model_validate(data)
