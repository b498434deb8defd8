from __future__ import annotations

from typing import ClassVar, final

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_PLACEHOLDER_REMOTE_STORE_URL = "https://store.example.com"


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Clipfeed"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"
    log_level: str = "INFO"

    # Remote store (REST + realtime). Also accept SUPABASE_URL / SUPABASE_ANON_KEY.
    remote_store_url: str = Field(
        default=_PLACEHOLDER_REMOTE_STORE_URL,
        validation_alias=AliasChoices("REMOTE_STORE_URL", "SUPABASE_URL"),
    )
    remote_store_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("REMOTE_STORE_API_KEY", "SUPABASE_ANON_KEY"),
    )
    # End-user bearer; empty means requests go out with the api key only.
    remote_access_token: str = ""
    remote_request_timeout_seconds: float = 15.0

    # Media
    media_bucket: str = "videos"
    media_local_dir: str = ".data/media"
    media_max_size_bytes: int = 200 * 1024 * 1024

    # 搜索防抖：最后一次输入后静默 400ms 才发起查询
    search_debounce_ms: int = 400
    # A pushed insert collapses into a pending local insert with the same
    # author/content when their timestamps are within this window.
    push_dedup_window_seconds: float = 30.0

    count_collection: str = "comments"
    count_parent_field: str = "video_id"

    # Loopback store (clipfeed.devstore)
    devstore_database_url: str = "sqlite:///./devstore.db"

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        url = self.remote_store_url.strip()
        if not url or url == _PLACEHOLDER_REMOTE_STORE_URL:
            errors.append("REMOTE_STORE_URL must be set in production")
        elif not url.lower().startswith("https://"):
            errors.append("REMOTE_STORE_URL must use https in production")

        if not self.remote_store_api_key.strip():
            errors.append("REMOTE_STORE_API_KEY must be set in production")

        if self.search_debounce_ms < 0:
            errors.append("SEARCH_DEBOUNCE_MS must not be negative")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def rest_base_url(self) -> str:
        return f"{self.remote_store_url.rstrip('/')}/rest/v1"

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if self.remote_store_url.strip() == _PLACEHOLDER_REMOTE_STORE_URL:
            warnings.append("REMOTE_STORE_URL is using placeholder value")
        if not self.remote_store_api_key.strip():
            warnings.append("REMOTE_STORE_API_KEY is empty")
        if self.remote_store_url.strip().lower().startswith("http://"):
            warnings.append("REMOTE_STORE_URL is not using https")
        return warnings


# The validator is invoked by Pydantic at runtime.
_ = Settings._validate_production_settings


settings = Settings()
