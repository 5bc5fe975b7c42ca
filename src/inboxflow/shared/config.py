"""
Centralized configuration for the inboxflow services.

- Pure Python (dataclasses + stdlib), no Pydantic settings.
- Loads from OS env; parses a .env file from the repo root when present.
- Strong typing & validation in __post_init__.
- Immutable singleton via functools.lru_cache.
- Secrets never logged (masked).
"""

from __future__ import annotations

import functools
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, cast
from urllib.parse import urlparse

from dotenv import load_dotenv


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "***"
    return value[:2] + "…" + value[-2:]


def _get_env_str(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    v = os.getenv(key, default)
    if required and (v is None or str(v).strip() == ""):
        raise ValueError(f"Missing required env var: {key}")
    return v


def _get_env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip().lower()
    return v in {"1", "true", "t", "yes", "y", "on"}


def _get_env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be an integer")


def _get_env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be a number")


def _validate_choice(value: str, *, choices: tuple[str, ...], key: str) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {choices}, got {value!r}")
    return value


def _validate_url(value: Optional[str], *, key: str, allowed_schemes: tuple[str, ...]) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = urlparse(value)
    if parsed.scheme not in allowed_schemes or not parsed.netloc:
        raise ValueError(f"{key} must be a valid URL with scheme in {allowed_schemes}")
    return value


def _validate_database_dsn(value: str, *, key: str) -> str:
    if not value.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
        raise ValueError(f"{key} must start with postgresql+asyncpg:// or sqlite+aiosqlite://")
    return value


def _require_positive(value: float, *, key: str) -> None:
    if value <= 0:
        raise ValueError(f"{key} must be > 0")


# ------------------------------------------------------------------------------
# Settings dataclass (immutable)
# ------------------------------------------------------------------------------
EnvName = Literal["local", "dev", "staging", "prod", "test"]


@dataclass(frozen=True)
class Settings:
    # Environment
    environment: EnvName = "local"
    debug: bool = False

    # Observability
    log_level: str = "INFO"
    log_json: bool = True

    # Core services
    database_url: str = "sqlite+aiosqlite:///./inboxflow.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    redis_url: Optional[str] = None

    # WhatsApp / Provider
    webhook_verify_token: Optional[str] = None
    wa_app_secret: Optional[str] = None  # enables X-Hub-Signature-256 verification
    wa_api_base_url: str = "https://graph.facebook.com"
    wa_api_version: str = "v18.0"
    wa_http_timeout: float = 10.0
    encryption_key: Optional[str] = None

    # Per-tenant send limiter
    default_messages_per_minute: int = 60
    rate_limit_bucket_ttl: int = 300

    # Queue: webhook-processor
    webhook_max_attempts: int = 5
    webhook_backoff_base_seconds: float = 2.0
    webhook_concurrency: int = 10
    webhook_throughput_per_second: float = 100.0
    # PROCESSING rows untouched this long are re-claimable; also the queue lease
    webhook_stale_seconds: int = 300
    webhook_sweep_interval_seconds: float = 60.0
    webhook_sweep_batch_size: int = 100

    # Queue: message-send
    send_max_attempts: int = 3
    send_backoff_base_seconds: float = 5.0
    send_concurrency: int = 5
    send_throughput_per_second: float = 80.0

    queue_backoff_max_seconds: float = 300.0

    # Flow engine
    flow_poll_interval_seconds: float = 1.0
    flow_batch_size: int = 10
    flow_max_retries: int = 3
    flow_max_steps: int = 100
    flow_delay_min_ms: int = 1_000
    flow_delay_max_ms: int = 300_000
    flow_stale_seconds: int = 300

    # Paths
    base_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parents[3])

    # Derived/computed flags (filled in __post_init__)
    is_prod: bool = field(init=False)
    is_local: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environment",
            _validate_choice(self.environment, choices=("local", "dev", "staging", "prod", "test"), key="ENVIRONMENT"),
        )

        object.__setattr__(self, "database_url", _validate_database_dsn(self.database_url, key="DATABASE_URL"))
        if self.redis_url:
            _validate_url(self.redis_url, key="REDIS_URL", allowed_schemes=("redis", "rediss"))
        _validate_url(self.wa_api_base_url, key="WA_API_BASE_URL", allowed_schemes=("http", "https"))

        # Basic sanity for WA app secret (optional)
        if self.wa_app_secret is not None and len(self.wa_app_secret) < 8:
            raise ValueError("WA_APP_SECRET looks too short")

        for key, value in (
            ("DEFAULT_MESSAGES_PER_MINUTE", self.default_messages_per_minute),
            ("RATE_LIMIT_BUCKET_TTL", self.rate_limit_bucket_ttl),
            ("WEBHOOK_MAX_ATTEMPTS", self.webhook_max_attempts),
            ("WEBHOOK_CONCURRENCY", self.webhook_concurrency),
            ("WEBHOOK_THROUGHPUT_PER_SECOND", self.webhook_throughput_per_second),
            ("WEBHOOK_STALE_SECONDS", self.webhook_stale_seconds),
            ("WEBHOOK_SWEEP_INTERVAL_SECONDS", self.webhook_sweep_interval_seconds),
            ("WEBHOOK_SWEEP_BATCH_SIZE", self.webhook_sweep_batch_size),
            ("SEND_MAX_ATTEMPTS", self.send_max_attempts),
            ("SEND_CONCURRENCY", self.send_concurrency),
            ("SEND_THROUGHPUT_PER_SECOND", self.send_throughput_per_second),
            ("FLOW_POLL_INTERVAL_SECONDS", self.flow_poll_interval_seconds),
            ("FLOW_BATCH_SIZE", self.flow_batch_size),
            ("FLOW_MAX_RETRIES", self.flow_max_retries),
            ("FLOW_MAX_STEPS", self.flow_max_steps),
            ("WA_HTTP_TIMEOUT", self.wa_http_timeout),
        ):
            _require_positive(value, key=key)

        if self.flow_delay_min_ms > self.flow_delay_max_ms:
            raise ValueError("FLOW_DELAY_MIN_MS must be <= FLOW_DELAY_MAX_MS")

        if not re.fullmatch(r"(?i)DEBUG|INFO|WARNING|ERROR|CRITICAL", self.log_level.strip()):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

        env = self.environment
        object.__setattr__(self, "is_prod", env == "prod")
        object.__setattr__(self, "is_local", env in ("local", "test"))

    @property
    def wa_graph_url(self) -> str:
        return f"{self.wa_api_base_url.rstrip('/')}/{self.wa_api_version}"

    # Safe dict (for debug prints without secrets)
    def safe_dict(self) -> dict:
        return {
            "environment": self.environment,
            "debug": self.debug,
            "log_level": self.log_level,
            "log_json": self.log_json,
            "database_url": "<masked>" if self.database_url else "<unset>",
            "redis_url": "<masked>" if self.redis_url else "<unset>",
            "webhook_verify_token": _mask_secret(self.webhook_verify_token),
            "wa_app_secret": _mask_secret(self.wa_app_secret),
            "wa_graph_url": self.wa_graph_url,
            "encryption_key": _mask_secret(self.encryption_key),
            "default_messages_per_minute": self.default_messages_per_minute,
            "webhook_concurrency": self.webhook_concurrency,
            "send_concurrency": self.send_concurrency,
            "flow_batch_size": self.flow_batch_size,
            "base_dir": str(self.base_dir),
        }


# ------------------------------------------------------------------------------
# Loader (singleton)
# ------------------------------------------------------------------------------
def load_settings() -> Settings:
    """Build Settings from the current process environment."""
    return Settings(
        environment=cast(EnvName, _get_env_str("ENVIRONMENT", "local") or "local"),
        debug=_get_env_bool("DEBUG", False),
        log_level=_get_env_str("LOG_LEVEL", "INFO") or "INFO",
        log_json=_get_env_bool("LOG_JSON", True),
        database_url=_get_env_str("DATABASE_URL", "sqlite+aiosqlite:///./inboxflow.db") or "",
        database_pool_size=_get_env_int("DATABASE_POOL_SIZE", 5),
        database_max_overflow=_get_env_int("DATABASE_MAX_OVERFLOW", 10),
        redis_url=_get_env_str("REDIS_URL", None) or None,
        webhook_verify_token=_get_env_str("WEBHOOK_VERIFY_TOKEN", None),
        wa_app_secret=_get_env_str("WA_APP_SECRET", None) or None,
        wa_api_base_url=_get_env_str("WA_API_BASE_URL", "https://graph.facebook.com") or "https://graph.facebook.com",
        wa_api_version=_get_env_str("WA_API_VERSION", "v18.0") or "v18.0",
        wa_http_timeout=_get_env_float("WA_HTTP_TIMEOUT", 10.0),
        encryption_key=_get_env_str("ENCRYPTION_KEY", None) or None,
        default_messages_per_minute=_get_env_int("DEFAULT_MESSAGES_PER_MINUTE", 60),
        rate_limit_bucket_ttl=_get_env_int("RATE_LIMIT_BUCKET_TTL", 300),
        webhook_max_attempts=_get_env_int("WEBHOOK_MAX_ATTEMPTS", 5),
        webhook_backoff_base_seconds=_get_env_float("WEBHOOK_BACKOFF_BASE_SECONDS", 2.0),
        webhook_concurrency=_get_env_int("WEBHOOK_CONCURRENCY", 10),
        webhook_throughput_per_second=_get_env_float("WEBHOOK_THROUGHPUT_PER_SECOND", 100.0),
        webhook_stale_seconds=_get_env_int("WEBHOOK_STALE_SECONDS", 300),
        webhook_sweep_interval_seconds=_get_env_float("WEBHOOK_SWEEP_INTERVAL_SECONDS", 60.0),
        webhook_sweep_batch_size=_get_env_int("WEBHOOK_SWEEP_BATCH_SIZE", 100),
        send_max_attempts=_get_env_int("SEND_MAX_ATTEMPTS", 3),
        send_backoff_base_seconds=_get_env_float("SEND_BACKOFF_BASE_SECONDS", 5.0),
        send_concurrency=_get_env_int("SEND_CONCURRENCY", 5),
        send_throughput_per_second=_get_env_float("SEND_THROUGHPUT_PER_SECOND", 80.0),
        queue_backoff_max_seconds=_get_env_float("QUEUE_BACKOFF_MAX_SECONDS", 300.0),
        flow_poll_interval_seconds=_get_env_float("FLOW_POLL_INTERVAL_SECONDS", 1.0),
        flow_batch_size=_get_env_int("FLOW_BATCH_SIZE", 10),
        flow_max_retries=_get_env_int("FLOW_MAX_RETRIES", 3),
        flow_max_steps=_get_env_int("FLOW_MAX_STEPS", 100),
        flow_delay_min_ms=_get_env_int("FLOW_DELAY_MIN_MS", 1_000),
        flow_delay_max_ms=_get_env_int("FLOW_DELAY_MAX_MS", 300_000),
        flow_stale_seconds=_get_env_int("FLOW_STALE_SECONDS", 300),
    )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Attempt to load .env from repo root (../../.env relative to src/inboxflow/)
    env_file = Path(__file__).resolve().parents[3] / ".env"
    if env_file.exists():
        load_dotenv(dotenv_path=str(env_file), override=False)
    return load_settings()
