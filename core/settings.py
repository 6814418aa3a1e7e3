"""Centralised configuration for the credits ledger and trial-grant engine."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("settings")


_SECRET_FIELDS = {
    "DATABASE_URL",
    "REDIS_URL",
}

_LEDGER_BACKENDS = {"postgres", "memory"}
_COUNTER_BACKENDS = {"redis", "memory"}
_TRIAL_MODES = {"fixed_claim", "promo_auto_grant"}


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip()
    if len(text) <= 4:
        return text
    return f"***{text[-4:]}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("timestamp must not be empty")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    DATABASE_URL: Optional[str] = Field(default=None)
    LEDGER_BACKEND: str = Field(default="")
    FORBID_MEMORY_DB: bool = Field(default=False)

    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_PREFIX: str = Field(default="credits")
    COUNTER_BACKEND: str = Field(default="")
    COUNTER_RETENTION_HOURS: int = Field(default=720, ge=1, le=24 * 365)
    COUNTER_PURGE_INTERVAL_SEC: int = Field(default=600, ge=10, le=86_400)

    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)

    TRIAL_POLICY_MODE: str = Field(default="fixed_claim")
    PROMO_START: datetime = Field(default=datetime(2025, 12, 28, tzinfo=timezone.utc))
    PROMO_END: datetime = Field(default=datetime(2026, 1, 15, tzinfo=timezone.utc))
    PROMO_TRIAL_CREDITS: int = Field(default=5, ge=1, le=10_000)
    DEFAULT_TRIAL_CREDITS: int = Field(default=1, ge=1, le=10_000)
    FIXED_TRIAL_CREDITS: int = Field(default=5, ge=1, le=10_000)
    THROTTLED_TRIAL_CREDITS: int = Field(default=1, ge=1, le=10_000)

    MAX_ACCOUNTS_PER_IP: int = Field(default=2, ge=1, le=1000)
    MAX_ACCOUNTS_PER_FINGERPRINT: int = Field(default=1, ge=1, le=1000)
    MAX_SIGNUPS_PER_SUBNET_HOUR: int = Field(default=3, ge=1, le=10_000)
    SUBNET_VELOCITY_WINDOW_MINUTES: int = Field(default=60, ge=1, le=24 * 60)
    SUBNET_TRACKER_EXPIRY_HOURS: int = Field(default=24, ge=1, le=24 * 30)
    MIN_BEHAVIOR_SCORE_FOR_UPGRADE: int = Field(default=30, ge=0, le=100)

    # Computed in ``_post_init``
    LEDGER_BACKEND_EFFECTIVE: str = Field(default="memory", exclude=True)
    COUNTER_BACKEND_EFFECTIVE: str = Field(default="memory", exclude=True)

    @field_validator("DATABASE_URL", "REDIS_URL", mode="before")
    def _strip_optional(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("LEDGER_BACKEND", "COUNTER_BACKEND", "TRIAL_POLICY_MODE", mode="before")
    def _normalize_choice(cls, value: Any) -> str:
        return str(value or "").strip().lower().replace("-", "_")

    @field_validator("LOG_LEVEL", mode="before")
    def _normalize_level(cls, value: Any) -> str:
        if value is None:
            return "INFO"
        text = str(value).strip().upper()
        if text not in logging._nameToLevel:  # type: ignore[attr-defined]
            return "INFO"
        return text

    @field_validator("PROMO_START", "PROMO_END", mode="before")
    def _coerce_timestamp(cls, value: Any) -> datetime:
        return _parse_timestamp(value)

    @field_validator("REDIS_PREFIX", mode="before")
    def _normalize_prefix(cls, value: Any) -> str:
        text = str(value or "credits").strip().strip(":")
        return text or "credits"

    @model_validator(mode="after")
    def _post_init(self) -> "Settings":
        self.PROMO_START = _parse_timestamp(self.PROMO_START)
        self.PROMO_END = _parse_timestamp(self.PROMO_END)
        if self.PROMO_END <= self.PROMO_START:
            msg = "PROMO_END must be later than PROMO_START"
            logger.error(msg)
            raise RuntimeError(msg)

        if self.TRIAL_POLICY_MODE not in _TRIAL_MODES:
            msg = (
                f"TRIAL_POLICY_MODE must be one of {sorted(_TRIAL_MODES)}; "
                f"got '{self.TRIAL_POLICY_MODE}'"
            )
            logger.error(msg)
            raise RuntimeError(msg)

        backend = self.LEDGER_BACKEND or ("postgres" if self.DATABASE_URL else "memory")
        if backend not in _LEDGER_BACKENDS:
            msg = f"Unsupported LEDGER_BACKEND '{self.LEDGER_BACKEND}'"
            logger.error(msg)
            raise RuntimeError(msg)
        if backend == "postgres" and not self.DATABASE_URL:
            msg = "DATABASE_URL is required when LEDGER_BACKEND=postgres"
            logger.error(msg)
            raise RuntimeError(msg)
        if backend == "memory" and self.FORBID_MEMORY_DB:
            msg = "Memory ledger backend is forbidden by FORBID_MEMORY_DB"
            logger.error(msg)
            raise RuntimeError(msg)
        self.LEDGER_BACKEND_EFFECTIVE = backend

        counters = self.COUNTER_BACKEND or ("redis" if self.REDIS_URL else "memory")
        if counters not in _COUNTER_BACKENDS:
            msg = f"Unsupported COUNTER_BACKEND '{self.COUNTER_BACKEND}'"
            logger.error(msg)
            raise RuntimeError(msg)
        if counters == "redis" and not self.REDIS_URL:
            msg = "REDIS_URL is required when COUNTER_BACKEND=redis"
            logger.error(msg)
            raise RuntimeError(msg)
        self.COUNTER_BACKEND_EFFECTIVE = counters

        return self

    def configuration_summary(self) -> Mapping[str, Any]:
        keys: MutableMapping[str, Any] = {
            "LEDGER_BACKEND": self.LEDGER_BACKEND_EFFECTIVE,
            "COUNTER_BACKEND": self.COUNTER_BACKEND_EFFECTIVE,
            "REDIS_PREFIX": self.REDIS_PREFIX,
            "TRIAL_POLICY_MODE": self.TRIAL_POLICY_MODE,
            "PROMO_START": self.PROMO_START.isoformat(),
            "PROMO_END": self.PROMO_END.isoformat(),
            "PROMO_TRIAL_CREDITS": self.PROMO_TRIAL_CREDITS,
            "DEFAULT_TRIAL_CREDITS": self.DEFAULT_TRIAL_CREDITS,
            "FIXED_TRIAL_CREDITS": self.FIXED_TRIAL_CREDITS,
        }
        for secret in sorted(_SECRET_FIELDS):
            value = getattr(self, secret, None)
            keys[secret] = _mask(value)
        return keys

    def critical_variables(self) -> Mapping[str, str]:
        data: MutableMapping[str, str] = {}
        for field in ("DATABASE_URL", "REDIS_URL", "TRIAL_POLICY_MODE"):
            value = getattr(self, field, "") or ""
            data[field] = _mask(value) if field in _SECRET_FIELDS else str(value)
        return data


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        errors = []
        for entry in exc.errors():
            loc = "::".join(str(part) for part in entry.get("loc", ()))
            msg = entry.get("msg", "invalid value")
            errors.append(f"{loc}: {msg}")
        message = "Invalid configuration: " + ", ".join(errors)
        logger.error(message)
        raise RuntimeError(message) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    """Reload settings from the environment and update module globals."""

    global settings
    settings = _load_settings()
    return settings


def configuration_summary_json() -> str:
    return json.dumps(settings.configuration_summary(), ensure_ascii=False)


__all__ = [
    "Settings",
    "settings",
    "configuration_summary_json",
    "reload_settings",
]
