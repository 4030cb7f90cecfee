from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

DEFAULT_PART_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_UPLOAD_BATCH_SIZE = 6
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 3.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60 * 60


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Settings:
    COS_SECRET_ID: str | None = None
    COS_SECRET_KEY: str | None = None
    COS_SERVICE_BASE_URL: str | None = None
    COS_ACCELERATED_UPLOAD_BASE_URL: str | None = None
    CDN_BASE_URL: str | None = None
    CDN_AUTH_KEY_TYPE_A: str | None = None
    STORAGE_REQUEST_TIMEOUT_SECONDS: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    STORAGE_PART_SIZE_BYTES: int = DEFAULT_PART_SIZE_BYTES
    STORAGE_UPLOAD_BATCH_SIZE: int = DEFAULT_UPLOAD_BATCH_SIZE
    STORAGE_MAX_RETRIES: int = DEFAULT_MAX_RETRIES
    STORAGE_RETRY_BACKOFF_SECONDS: float = DEFAULT_RETRY_BACKOFF_SECONDS
    BLOB_REDIRECT_DOWNLOADS: bool = True
    ENABLE_METRICS: bool = True
    TRACE_HTTP: bool = False
    API_KEY_ENABLED: bool = False
    API_KEY: str | None = None
    DESTRUCTIVE_API_KEY: str | None = None
    CORS_ENABLED: bool = False
    CORS_ORIGINS: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.STORAGE_PART_SIZE_BYTES <= 0:
            raise ValueError("STORAGE_PART_SIZE_BYTES must be positive.")
        if self.STORAGE_UPLOAD_BATCH_SIZE <= 0:
            raise ValueError("STORAGE_UPLOAD_BATCH_SIZE must be positive.")
        if self.STORAGE_MAX_RETRIES <= 0:
            raise ValueError("STORAGE_MAX_RETRIES must be at least 1.")
        if self.STORAGE_RETRY_BACKOFF_SECONDS < 0:
            raise ValueError("STORAGE_RETRY_BACKOFF_SECONDS must not be negative.")
        if self.STORAGE_REQUEST_TIMEOUT_SECONDS <= 0:
            raise ValueError("STORAGE_REQUEST_TIMEOUT_SECONDS must be positive.")

    @property
    def cdn_enabled(self) -> bool:
        return bool(self.CDN_BASE_URL and self.CDN_AUTH_KEY_TYPE_A)

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            COS_SECRET_ID=_as_optional(os.environ.get("COS_SECRET_ID")),
            COS_SECRET_KEY=_as_optional(os.environ.get("COS_SECRET_KEY")),
            COS_SERVICE_BASE_URL=_as_optional(os.environ.get("COS_SERVICE_BASE_URL")),
            COS_ACCELERATED_UPLOAD_BASE_URL=_as_optional(
                os.environ.get("COS_ACCELERATED_UPLOAD_BASE_URL")
            ),
            CDN_BASE_URL=_as_optional(os.environ.get("CDN_BASE_URL")),
            CDN_AUTH_KEY_TYPE_A=_as_optional(os.environ.get("CDN_AUTH_KEY_TYPE_A")),
            STORAGE_REQUEST_TIMEOUT_SECONDS=int(
                os.environ.get(
                    "STORAGE_REQUEST_TIMEOUT_SECONDS",
                    cls.STORAGE_REQUEST_TIMEOUT_SECONDS,
                )
            ),
            STORAGE_PART_SIZE_BYTES=int(
                os.environ.get("STORAGE_PART_SIZE_BYTES", cls.STORAGE_PART_SIZE_BYTES)
            ),
            STORAGE_UPLOAD_BATCH_SIZE=int(
                os.environ.get(
                    "STORAGE_UPLOAD_BATCH_SIZE", cls.STORAGE_UPLOAD_BATCH_SIZE
                )
            ),
            STORAGE_MAX_RETRIES=int(
                os.environ.get("STORAGE_MAX_RETRIES", cls.STORAGE_MAX_RETRIES)
            ),
            STORAGE_RETRY_BACKOFF_SECONDS=float(
                os.environ.get(
                    "STORAGE_RETRY_BACKOFF_SECONDS", cls.STORAGE_RETRY_BACKOFF_SECONDS
                )
            ),
            BLOB_REDIRECT_DOWNLOADS=_as_bool(
                os.environ.get("BLOB_REDIRECT_DOWNLOADS"), cls.BLOB_REDIRECT_DOWNLOADS
            ),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
            TRACE_HTTP=_as_bool(os.environ.get("TRACE_HTTP"), cls.TRACE_HTTP),
            API_KEY_ENABLED=_as_bool(
                os.environ.get("API_KEY_ENABLED"), cls.API_KEY_ENABLED
            ),
            API_KEY=os.environ.get("API_KEY"),
            DESTRUCTIVE_API_KEY=os.environ.get("DESTRUCTIVE_API_KEY"),
            CORS_ENABLED=_as_bool(os.environ.get("CORS_ENABLED"), cls.CORS_ENABLED),
            CORS_ORIGINS=_as_list(os.environ.get("CORS_ORIGINS")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
