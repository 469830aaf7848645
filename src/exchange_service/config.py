"""
Configuration management for the exchange service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"jwt_secret"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class AuthConfig(BaseModel):
    """Bearer token verification configuration."""

    model_config = ConfigDict(extra="forbid")
    jwt_secret: str
    issuer: str | None

    @field_validator("jwt_secret")
    @classmethod
    def _secret_long_enough(cls, value: str) -> str:
        if len(value) < 32:
            msg = "auth.jwt_secret must be at least 32 characters"
            raise ValueError(msg)
        return value


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class LimitsConfig(BaseModel):
    """Field bounds for requests, offers, and messages."""

    model_config = ConfigDict(extra="forbid")
    min_title_length: int
    max_title_length: int
    min_description_length: int
    max_description_length: int
    max_budget: float
    min_offer_message_length: int
    max_offer_message_length: int
    max_proposed_price: float
    max_duration_length: int
    max_message_length: int


class NotificationsConfig(BaseModel):
    """Push notification channel configuration."""

    model_config = ConfigDict(extra="forbid")
    queue_size: int
    keepalive_seconds: int


class PaginationConfig(BaseModel):
    """Conversation paging configuration."""

    model_config = ConfigDict(extra="forbid")
    default_limit: int
    max_limit: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    auth: AuthConfig
    request: RequestConfig
    limits: LimitsConfig
    notifications: NotificationsConfig
    pagination: PaginationConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings. Cached after the first call."""
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call reloads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump())
