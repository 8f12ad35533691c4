"""Central configuration for the WhatsApp relay service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Runtime paths are relative to the working directory, never to the installed package.
DEFAULT_ENV_FILE = ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class SessionSettings(BaseModel):
    """WhatsApp session lifecycle configuration."""
    session_dir: Path = Field(default_factory=lambda: Path.cwd() / ".wwebjs_auth", description="Persisted browser profile / credential store")
    reinit_delay_seconds: float = Field(5.0, description="Delay before rebuilding the session after disconnect or auth failure")
    ui_event_queue_size: int = Field(16, description="Max buffered lifecycle events per UI subscriber")


class QueueSettings(BaseModel):
    """Dispatch queue and worker tuning."""
    prefix: str = Field("relay:whatsappMessages", description="Redis key prefix for the dispatch queue")
    remove_on_fail: int = Field(50, description="Dead-letter entries kept for inspection")
    result_ttl_seconds: int = Field(3600, description="How long completed job records stay queryable")
    poll_interval_seconds: float = Field(0.5, description="Worker poll interval when the queue is empty")
    send_timeout_seconds: float = Field(60.0, description="Upper bound on a single send call")


class BrowserSettings(BaseModel):
    """Headless Chromium / WhatsApp Web automation configuration."""
    headless: bool = Field(True, description="Run Chromium without a display")
    url: str = Field("https://web.whatsapp.com/", description="WhatsApp Web entry point")
    poll_interval_seconds: float = Field(1.0, description="Page state polling interval")
    auth_timeout_seconds: float = Field(120.0, description="Max wait for a challenge or the chat list before auth failure")
    send_timeout_seconds: float = Field(30.0, description="Max wait for the compose box / send button")
    user_agent: str = Field(
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        description="User agent presented to WhatsApp Web",
    )


class Settings(BaseSettings):
    """Environment-driven settings for the relay."""

    # HTTP surface
    api_key: str = Field("12345678", description="Bearer token required on every API call")
    host: str = Field("0.0.0.0", description="Host interface for the FastAPI server")
    port: int = Field(5000, description="Port for the FastAPI server")

    # Redis backing store
    redis_host: str = Field("localhost", description="Redis host for the dispatch queue")
    redis_port: int = Field(6379, description="Redis port for the dispatch queue")
    redis_url: Optional[str] = Field(None, description="Full Redis URL; overrides host/port when set")

    # Dispatch policy
    worker_concurrency: int = Field(1, description="Number of concurrent dispatch workers")
    job_attempts: int = Field(3, description="Max send attempts per job")
    job_backoff_ms: int = Field(1000, description="Base delay for exponential retry backoff (ms)")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(default_factory=lambda: Path.cwd() / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    session: SessionSettings = Field(default_factory=SessionSettings, description="Session lifecycle settings")
    queue: QueueSettings = Field(default_factory=QueueSettings, description="Dispatch queue settings")
    browser: BrowserSettings = Field(default_factory=BrowserSettings, description="Browser automation settings")

    @field_validator("worker_concurrency", "job_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("job_backoff_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    model_config = SettingsConfigDict(
        env_file=DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def resolved_redis_url(self) -> str:
        return self.redis_url or f"redis://{self.redis_host}:{self.redis_port}/0"


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
