"""Pydantic-based configuration helpers for the portal decision service."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator


class AppSettings(BaseModel):
    """Settings required to run decision workflows and their side effects."""

    database_url: str = Field(..., alias="DATABASE_URL")
    resend_api_key: str | None = Field(None, alias="RESEND_API_KEY")
    email_from_address: str = Field("R/HOOD <hello@rhood.io>", alias="RESEND_FROM_EMAIL")
    portal_url: str = Field("https://portal.rhood.co", alias="PORTAL_URL")
    remote_call_timeout: float = Field(10.0, alias="REMOTE_CALL_TIMEOUT_SECONDS")
    privileged_updates_enabled: bool = Field(True, alias="PRIVILEGED_UPDATES_ENABLED")
    schema_fix_migration: str = Field(
        "20250601000000_fix_status_update_policies.sql", alias="SCHEMA_FIX_MIGRATION"
    )

    @field_validator("resend_api_key", mode="before")
    @classmethod
    def _blank_key_is_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        trimmed = value.strip()
        return trimmed or None

    @field_validator("portal_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("remote_call_timeout")
    @classmethod
    def _ensure_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Remote call timeout must be greater than zero")
        return value


def _format_missing(fields: Iterable[str]) -> str:
    """Return a human-friendly comma-separated list of missing env vars."""

    unique: List[str] = []
    for field in fields:
        if field not in unique:
            unique.append(field)
    return ", ".join(unique)


@lru_cache()
def get_settings() -> AppSettings:
    """Fetch and cache settings from environment variables."""

    try:
        return AppSettings.model_validate(os.environ)
    except ValidationError as exc:  # pragma: no cover - exercised via tests
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if not missing:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc
        message = (
            "Missing required environment variables: "
            f"{_format_missing(missing)}"
        )
        raise RuntimeError(message) from exc
