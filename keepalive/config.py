"""Configuration management for the keep-alive service."""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from keepalive.probe import DEFAULT_USER_AGENT
from keepalive.store import build_redis_url


DEFAULT_CONFIG_PATH = "config/keepalive.yaml"


class ConfigError(Exception):
    """No domains could be resolved, or the domain configuration is malformed."""


class KeepAliveConfig(BaseModel):
    """Main configuration for the keep-alive service."""

    # Key-value store
    redis_url: Optional[str] = Field(default=None, description="Full Redis URL; wins over host/port/password")
    redis_host: Optional[str] = Field(default=None, description="Redis host")
    redis_port: Optional[int] = Field(default=None, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")

    # Static fallback when no store is configured (raw JSON array string)
    target_domains: Optional[str] = Field(default=None, description="JSON array of domains to wake up")

    # Probing
    retry_count: int = Field(default=2, ge=0, description="Extra attempts after the first failure")
    retry_delay_ms: int = Field(default=2000, ge=0, description="Delay between attempts in milliseconds")
    request_timeout_seconds: float = Field(default=15.0, gt=0, description="Per-request transport timeout")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header sent with each wakeup")

    # Scheduling
    cron_schedule: str = Field(default="*/1 * * * *", description="Cron expression for scheduled ticks")
    scheduler_enabled: bool = Field(default=True, description="Start the cron ticker with the web server")

    # Deletion override
    admin_verification_code: str = Field(default="", description="Code that may delete any domain")

    # Server / presentation
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=3000, description="Bind port")
    display_timezone: str = Field(default="UTC", description="Timezone for report timestamps")
    log_level: str = Field(default="INFO", description="Logging level")

    def store_url(self) -> str | None:
        if self.redis_url and self.redis_url.strip():
            return self.redis_url.strip()
        if self.redis_host and self.redis_port:
            return build_redis_url(self.redis_host, self.redis_port, self.redis_password)
        return None


def parse_target_domains(raw: str) -> list[str]:
    """Parse TARGET_DOMAINS; raises ConfigError unless it is a non-empty JSON array of strings."""
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise ConfigError(f"Configuration error: TARGET_DOMAINS is malformed. Details: {exc}") from exc

    if not isinstance(value, list) or not value:
        raise ConfigError("Configuration error: TARGET_DOMAINS is malformed. Details: must be a non-empty array.")

    domains: list[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(
                f"Configuration error: TARGET_DOMAINS is malformed. Details: element {idx} is not a domain string."
            )
        domains.append(item.strip())
    return domains


def _env_int(raw: str) -> int | None:
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def _env_float(raw: str) -> float | None:
    try:
        return float(str(raw).strip())
    except ValueError:
        return None


def _env_bool(raw: str) -> bool | None:
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return None


_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "REDIS_URL": ("redis_url", str),
    "REDIS_HOST": ("redis_host", str),
    "REDIS_PORT": ("redis_port", _env_int),
    "REDIS_PASSWORD": ("redis_password", str),
    "TARGET_DOMAINS": ("target_domains", str),
    "RETRY_COUNT": ("retry_count", _env_int),
    "RETRY_DELAY": ("retry_delay_ms", _env_int),
    "REQUEST_TIMEOUT": ("request_timeout_seconds", _env_float),
    "USER_AGENT": ("user_agent", str),
    "CRON_SCHEDULE": ("cron_schedule", str),
    "SCHEDULER_ENABLED": ("scheduler_enabled", _env_bool),
    "ADMIN_VERIFICATION_CODE": ("admin_verification_code", str),
    "HOST": ("host", str),
    "PORT": ("port", _env_int),
    "DISPLAY_TIMEZONE": ("display_timezone", str),
    "LOG_LEVEL": ("log_level", str),
}


def load_config(config_path: Optional[str] = None, environ: Optional[dict[str, str]] = None) -> KeepAliveConfig:
    """Load configuration from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("KEEPALIVE_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Config YAML must be a mapping")
        config_data.update(loaded)

    for env_name, (field_name, convert) in _ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw is None or not str(raw).strip():
            continue
        value = convert(raw)
        # Unparseable numbers fall back to the file/default value.
        if value is None:
            continue
        config_data[field_name] = value

    # Negative retry settings behave like zero.
    for key in ("retry_count", "retry_delay_ms"):
        if isinstance(config_data.get(key), int) and config_data[key] < 0:
            config_data[key] = 0

    return KeepAliveConfig(**config_data)
