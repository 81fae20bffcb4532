# config.py
import logging
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def _base_url(value: Optional[str]) -> str:
    return (value or "").strip().rstrip("/")


class Settings(BaseSettings):
    """Runtime configuration read from the environment and an optional ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", case_sensitive=False, extra="ignore"
    )

    anime_api_url: str = Field(default="", description="Anime metadata/streaming provider base URL")
    hanime_api_url: str = Field(default="", description="Hentai-anime and h-manga provider base URL")
    consumet_api_url: str = Field(default="", description="Manga metadata/pages provider base URL")
    redis_url: Optional[str] = Field(default=None, description="Cache backend URL (redis:// or rediss://)")
    redis_token: Optional[str] = Field(default=None, description="Cache backend access token")
    m3u8_proxy: str = Field(default="", description="Default downstream playlist proxy")
    m3u8_proxy_hd1: str = Field(default="", description="Playlist proxy override for hd-1")
    m3u8_proxy_hd3: str = Field(default="", description="Playlist proxy override for hd-3")
    log_level: str = Field(default="INFO", description="Root logging level")

    @field_validator(
        "anime_api_url", "hanime_api_url", "consumet_api_url", "m3u8_proxy", "m3u8_proxy_hd1", "m3u8_proxy_hd3",
        mode="before",
    )
    @classmethod
    def strip_trailing_slash(cls, value: Any) -> str:
        return _base_url(value)

    @field_validator("redis_url", "redis_token", mode="before")
    @classmethod
    def empty_as_unset(cls, value: Any) -> Optional[str]:
        return value or None

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, value: Any) -> str:
        return str(value or "INFO").upper()

    @property
    def cache_configured(self) -> bool:
        return bool(self.redis_url) and bool(self.redis_token)

    def playlist_proxy_for(self, server: str) -> str:
        """Downstream playlist proxy base for a source server, falling back to the default."""
        overrides = {
            "hd-1": self.m3u8_proxy_hd1,
            "hd-3": self.m3u8_proxy_hd3,
        }
        return _base_url(overrides.get(server) or self.m3u8_proxy)


def load_settings() -> Settings:
    settings = Settings()
    logger.info(
        f"Loaded settings: anime_api={'yes' if settings.anime_api_url else 'no'} "
        f"hanime_api={'yes' if settings.hanime_api_url else 'no'} "
        f"consumet_api={'yes' if settings.consumet_api_url else 'no'} "
        f"cache={'yes' if settings.cache_configured else 'no'}"
    )
    return settings
