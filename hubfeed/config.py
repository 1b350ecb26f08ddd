"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import parse_key_list


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Hubfeed", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    media_server_url: HttpUrl | None = Field(default=None, alias="MEDIA_SERVER_URL")
    media_server_token: str | None = Field(default=None, alias="MEDIA_SERVER_TOKEN")
    client_identifier: str = Field(default="hubfeed", alias="CLIENT_IDENTIFIER")
    request_timeout_seconds: float = Field(
        default=20.0, alias="REQUEST_TIMEOUT", gt=0, le=300
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./hubfeed.db", alias="DATABASE_URL"
    )
    memory_cache_limit: int = Field(
        default=64, alias="MEMORY_CACHE_LIMIT", ge=1, le=10_000
    )

    row_page_size: int = Field(default=24, alias="ROW_PAGE_SIZE", ge=1, le=500)
    row_lookahead: int = Field(default=5, alias="ROW_LOOKAHEAD", ge=0, le=100)
    library_page_size: int = Field(
        default=100, alias="LIBRARY_PAGE_SIZE", ge=1, le=1_000
    )
    reset_fingerprint_window: int = Field(
        default=20, alias="RESET_FINGERPRINT_WINDOW", ge=1, le=500
    )
    hero_recent_pool: int = Field(default=10, alias="HERO_RECENT_POOL", ge=1, le=100)

    show_recommendations: bool = Field(default=True, alias="SHOW_RECOMMENDATIONS")
    hidden_library_keys: tuple[str, ...] = Field(default=(), alias="HIDDEN_LIBRARIES")
    library_order: tuple[str, ...] = Field(default=(), alias="LIBRARY_ORDER")

    search_debounce_ms: int = Field(
        default=300, alias="SEARCH_DEBOUNCE_MS", ge=0, le=5_000
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("hidden_library_keys", mode="before")
    @classmethod
    def _parse_hidden_libraries(cls, value: object) -> tuple[str, ...]:
        return parse_key_list(value, setting="HIDDEN_LIBRARIES")

    @field_validator("library_order", mode="before")
    @classmethod
    def _parse_library_order(cls, value: object) -> tuple[str, ...]:
        return parse_key_list(value, setting="LIBRARY_ORDER")

    @model_validator(mode="after")
    def _check_row_paging(self) -> "Settings":
        """Keep the prefetch lookahead inside a single row page."""

        if self.row_lookahead >= self.row_page_size:
            raise ValueError("ROW_LOOKAHEAD must be smaller than ROW_PAGE_SIZE")
        return self

    @property
    def search_debounce_seconds(self) -> float:
        return self.search_debounce_ms / 1000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
