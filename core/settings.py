"""Centralised application configuration and environment validation."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Mapping, MutableMapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("settings")


_SECRET_FIELDS = {
    "LEDGER_ENCRYPTION_KEY",
    "DATABASE_URL",
}

_LEDGER_BACKENDS = {"postgres", "memory"}


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip()
    if len(text) <= 4:
        return text
    return f"***{text[-4:]}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    LEDGER_ENCRYPTION_KEY: str = Field(..., min_length=16)
    LEDGER_BACKEND: str = Field(default="postgres")
    DATABASE_URL: str = Field(default="")

    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)
    DIAGNOSTIC_ERRORS: bool = Field(default=False)

    FARMING_DURATION_SEC: float = Field(default=5 * 60 * 60, gt=0, le=7 * 24 * 60 * 60)
    FARMING_TOTAL_REWARD: float = Field(default=100.0, gt=0)
    FARMING_XP_RATIO: float = Field(default=0.1, ge=0)
    REFERRAL_RATE: float = Field(default=0.10, ge=0, le=1)
    DAILY_REWARD_TZ: str = Field(default="UTC")
    SWEEP_INTERVAL_SEC: float = Field(default=60.0, ge=1.0, le=3600.0)

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000, ge=1, le=65535)

    PG_POOL_MIN: int = Field(default=1, ge=1, le=100)
    PG_POOL_MAX: int = Field(default=10, ge=1, le=200)
    PG_POOL_MAX_IDLE: int = Field(default=30, ge=0, le=3600)
    DB_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)

    @field_validator("LEDGER_ENCRYPTION_KEY", "DATABASE_URL", mode="before")
    def _strip_required(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("LEDGER_BACKEND", mode="before")
    def _normalize_backend(cls, value: Any) -> str:
        text = str(value or "postgres").strip().lower()
        if text not in _LEDGER_BACKENDS:
            raise ValueError(f"LEDGER_BACKEND must be one of {sorted(_LEDGER_BACKENDS)}")
        return text

    @field_validator("LOG_LEVEL", mode="before")
    def _normalize_level(cls, value: Any) -> str:
        if value is None:
            return "INFO"
        text = str(value).strip().upper()
        if text not in logging._nameToLevel:  # type: ignore[attr-defined]
            return "INFO"
        return text

    @field_validator("DAILY_REWARD_TZ", mode="before")
    def _validate_zone(cls, value: Any) -> str:
        text = str(value or "UTC").strip() or "UTC"
        try:
            ZoneInfo(text)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone '{text}'")
        return text

    @model_validator(mode="after")
    def _post_init(self) -> "Settings":
        if self.LEDGER_BACKEND == "postgres" and not self.DATABASE_URL:
            msg = "DATABASE_URL is required when LEDGER_BACKEND=postgres"
            logger.error(msg)
            raise RuntimeError(msg)
        if self.PG_POOL_MAX < self.PG_POOL_MIN:
            self.PG_POOL_MAX = self.PG_POOL_MIN
        return self

    @property
    def daily_reward_zone(self) -> ZoneInfo:
        return ZoneInfo(self.DAILY_REWARD_TZ)

    def configuration_summary(self) -> Mapping[str, Any]:
        keys: MutableMapping[str, Any] = {
            "LEDGER_BACKEND": self.LEDGER_BACKEND,
            "FARMING_DURATION_SEC": self.FARMING_DURATION_SEC,
            "FARMING_TOTAL_REWARD": self.FARMING_TOTAL_REWARD,
            "FARMING_XP_RATIO": self.FARMING_XP_RATIO,
            "REFERRAL_RATE": self.REFERRAL_RATE,
            "DAILY_REWARD_TZ": self.DAILY_REWARD_TZ,
            "DIAGNOSTIC_ERRORS": self.DIAGNOSTIC_ERRORS,
        }
        for secret in sorted(_SECRET_FIELDS):
            value = getattr(self, secret, None)
            keys[secret] = _mask(value)
        return keys


def _load_settings(**overrides: Any) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        errors = []
        for entry in exc.errors():
            loc = "::".join(str(part) for part in entry.get("loc", ()))
            msg = entry.get("msg", "invalid value")
            errors.append(f"{loc}: {msg}")
        message = "Invalid configuration: " + ", ".join(errors)
        logger.error(message)
        raise RuntimeError(message) from exc


_SETTINGS: Optional[Settings] = None
_SETTINGS_LOCK = threading.Lock()


def get_settings() -> Settings:
    """Return the process settings, loading them on first use."""

    global _SETTINGS
    if _SETTINGS is not None:
        return _SETTINGS
    with _SETTINGS_LOCK:
        if _SETTINGS is None:
            _SETTINGS = _load_settings()
        return _SETTINGS


def reload_settings(**overrides: Any) -> Settings:
    """Reload settings from the environment and replace the cached instance."""

    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = _load_settings(**overrides)
        return _SETTINGS


def configuration_summary_json(settings: Optional[Settings] = None) -> str:
    current = settings or get_settings()
    return json.dumps(current.configuration_summary(), ensure_ascii=False)


__all__ = [
    "Settings",
    "configuration_summary_json",
    "get_settings",
    "reload_settings",
]
