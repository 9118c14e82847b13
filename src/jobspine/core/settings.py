"""
Centralized settings for jobspine.

One validated, cached settings object describes where the shared store
lives and how the dispatch loop drains it. Values come from ``JOBSPINE_*``
environment variables or a ``.env`` file.

Examples:
    >>> import os
    >>> os.environ["JOBSPINE_BATCH_LIMIT"] = "50"
    >>> clear_settings_cache()
    >>> get_settings().batch_limit
    50
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DispatchSettings(BaseSettings):
    """Dispatch core configuration.

    All fields can be set via ``JOBSPINE_*`` environment variables (e.g.
    ``JOBSPINE_REDIS_URL=redis://cache:6379/2``). List fields accept JSON
    (``JOBSPINE_SCHEDULED_SETS='["scheduled","retry"]'``).
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0")
    namespace: str = Field(default="", description="Optional key prefix, joined with ':'")

    # ── Sets ─────────────────────────────────────────────────────
    scheduled_sets: list[str] = Field(default_factory=lambda: ["scheduled", "retry"])
    periodic_set: str = Field(default="periodic")
    dead_set: str = Field(default="dead")

    # ── Dispatch ─────────────────────────────────────────────────
    batch_limit: int = Field(default=100, ge=1)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    cron_horizon_years: int = Field(default=5, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("scheduled_sets")
    @classmethod
    def _non_empty_set_names(cls, value: list[str]) -> list[str]:
        if any(not name.strip() for name in value):
            raise ValueError("scheduled_sets entries must be non-empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("log_level must be DEBUG, INFO, WARNING, ERROR or CRITICAL")
        return level

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, DispatchSettings] = {}


def get_settings(*, _force_reload: bool = False) -> DispatchSettings:
    """Load, validate, and cache a :class:`DispatchSettings` instance."""
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = DispatchSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Drop the cached settings (tests and reconfiguration)."""
    _settings_cache.clear()


__all__ = ["DispatchSettings", "get_settings", "clear_settings_cache"]
