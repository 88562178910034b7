from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PLACEHOLDER_PREFIX = "replace-with-"
DEFAULT_PROVIDER_API_BASE = "https://api.signing-provider.example/v1"
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def has_env_value(value: str | None) -> bool:
    """True for a non-empty value that is not a ``replace-with-...`` placeholder."""

    return bool(value and value.strip() and not value.strip().startswith(ENV_PLACEHOLDER_PREFIX))


class Settings(BaseModel):
    database_path: Path | None = None
    # None falls back to SIGNFLOW_DOCUMENTS_ROOT or <repo>/documents at write time
    documents_root: Path | None = None

    provider_api_base: str = DEFAULT_PROVIDER_API_BASE
    provider_api_key: str | None = None
    provider_org_id: str | None = None

    webhook_secret: str | None = None
    cron_secret: str | None = None

    auto_sync_seconds: int = 30
    log_level: str = "INFO"
    log_format: str = "console"
    cors_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @property
    def provider_configured(self) -> bool:
        return has_env_value(self.provider_api_key) and has_env_value(self.provider_org_id)

    @classmethod
    def from_env(cls) -> "Settings":
        values: dict[str, object] = {}

        database_path = _env("SIGNFLOW_DATABASE_PATH")
        if database_path:
            values["database_path"] = Path(database_path).expanduser()

        documents_root = _env("SIGNFLOW_DOCUMENTS_ROOT")
        if documents_root:
            values["documents_root"] = Path(documents_root).expanduser().resolve()

        api_base = _env("SIGNFLOW_PROVIDER_API_BASE")
        if api_base:
            values["provider_api_base"] = api_base
        values["provider_api_key"] = _env("SIGNFLOW_PROVIDER_API_KEY")
        values["provider_org_id"] = _env("SIGNFLOW_PROVIDER_ORG_ID")

        values["webhook_secret"] = _env("SIGNFLOW_WEBHOOK_SECRET")
        values["cron_secret"] = _env("SIGNFLOW_CRON_SECRET")

        auto_sync = _env("SIGNFLOW_AUTO_SYNC_SECONDS")
        if auto_sync and auto_sync.isdigit():
            values["auto_sync_seconds"] = int(auto_sync)

        values["log_level"] = _env("SIGNFLOW_LOG_LEVEL") or "INFO"
        values["log_format"] = _env("SIGNFLOW_LOG_FORMAT") or "console"

        origins_env = os.getenv("API_CORS_ORIGINS", "")
        origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
        if origins:
            values["cors_origins"] = origins

        return cls(**values)


__all__ = ["Settings", "has_env_value"]
