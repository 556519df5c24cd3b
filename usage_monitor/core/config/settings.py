from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".usage-monitor"
DEFAULT_ACCOUNTS_FILE = DEFAULT_HOME_DIR / "accounts.json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="USAGE_MONITOR_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    usage_api_base_url: str = "https://claude.ai/api"
    usage_fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    usage_fetch_total_timeout_seconds: float = Field(default=30.0, gt=0)
    # Transient failures are retried by the next poll; the interval is the backoff.
    usage_fetch_max_retries: int = Field(default=0, ge=0)
    http_client_connector_limit: int = Field(default=20, gt=0)
    http_client_connector_limit_per_host: int = Field(default=10, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=15.0, gt=0)
    http_client_dns_cache_ttl_seconds: int = Field(default=300, ge=0)
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    # Ticks land `poll_align_offset_seconds` after each interval boundary (:01 and :31),
    # right after the minute-aligned reset moments.
    poll_align_to_clock: bool = True
    poll_align_offset_seconds: float = Field(default=1.0, ge=0)
    history_window_seconds: float = Field(default=300.0, gt=0)
    prediction_lookahead_seconds: float = Field(default=900.0, gt=0)
    reset_window_seconds: float = Field(default=5 * 60 * 60, gt=0)
    debounce_timeout_seconds: float = Field(default=5.0, gt=0)
    accounts_file: Path = DEFAULT_ACCOUNTS_FILE
    notification_title: str = "Claude Usage Reset"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    metrics_port: int | None = Field(default=None, gt=0, lt=65536)
    startup_log_config: bool = False
    startup_log_env: bool = False

    @field_validator("accounts_file", mode="before")
    @classmethod
    def _expand_accounts_file(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("accounts_file must be a path")

    @field_validator("usage_api_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_alignment(self) -> Settings:
        if self.poll_align_to_clock and self.poll_align_offset_seconds >= self.poll_interval_seconds:
            raise ValueError("poll_align_offset_seconds must be smaller than poll_interval_seconds")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
