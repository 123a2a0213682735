"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. The platform token lives in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SECRETS__PLATFORM_TOKEN``, ``INTERVALS__MESSAGE_POLL``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from fansync.config import get_settings

    s = get_settings()
    print(s.intervals.roster_poll)
    print(s.tiers.whale_threshold)
"""

from __future__ import annotations

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class PlatformConfig(_StrictModel):
    """Remote messaging platform connection."""

    base_url: str = "https://api.fanvue.com"
    api_version: str = "2025-06-26"
    request_timeout: float = 15.0  # seconds, per gateway call
    page_size: int = 50
    max_roster_pages: int = 20
    read_retries: int = 3  # 429 retries for list calls; sends are never retried
    max_backoff: float = 30.0  # seconds

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("request_timeout", "max_backoff")
    @classmethod
    def positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("page_size", "max_roster_pages")
    @classmethod
    def clamp_pages(cls, v: int) -> int:
        return max(1, v)

    @field_validator("read_retries")
    @classmethod
    def clamp_retries(cls, v: int) -> int:
        return max(0, v)


class IntervalsConfig(_StrictModel):
    roster_poll: float = 30.0  # seconds
    message_poll: float = 10.0  # seconds

    @field_validator("roster_poll", "message_poll")
    @classmethod
    def positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll interval must be positive")
        return v


class TiersConfig(_StrictModel):
    """Lifetime-value tier boundary in cents, the unit every platform amount is read in."""

    whale_threshold: int = 100_000  # $1000

    @field_validator("whale_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("whale_threshold must be a positive integer")
        return v


class LimitsConfig(_StrictModel):
    max_text_length: int = 5000
    require_media_for_price: bool = True


class ServerConfig(_StrictModel):
    host: str = "127.0.0.1"
    port: int = 8484


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    platform_token: SecretStr | None = None


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    platform: PlatformConfig = PlatformConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    tiers: TiersConfig = TiersConfig()
    limits: LimitsConfig = LimitsConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
