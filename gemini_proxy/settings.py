from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gemini_proxy.proxy import DEFAULT_CONTENT_URL, DEFAULT_MESSAGE_URL
from gemini_proxy.upstream import DEFAULT_TIMEOUT_SECONDS


class Settings(BaseSettings):
    gemini_api_key: str | None = None
    gemini_api_url: str | None = None
    gemini_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    gemini_default_message_url: str = DEFAULT_MESSAGE_URL
    gemini_default_content_url: str = DEFAULT_CONTENT_URL
    gemini_targets_path: str | None = None
    proxy_audit_log_enabled: bool = False
    proxy_audit_log_path: str = "logs/proxy_attempts.jsonl"
    cors_allow_origin: str = "*"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("gemini_api_key", "gemini_api_url", "gemini_targets_path")
    @classmethod
    def _blank_as_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
