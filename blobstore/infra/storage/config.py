"""Immutable backend configuration for the object store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from blobstore.infra.storage.client import ConfigurationError

if TYPE_CHECKING:
    from blobstore.common.config import Settings


def _normalize_base_url(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    parsed = urlsplit(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"{name} must be an absolute http(s) URL: {value!r}")
    return value.rstrip("/")


@dataclass(frozen=True, slots=True)
class CdnConfig:
    """CDN download settings; active only when both fields are present."""

    base_url: str | None = None
    auth_key_type_a: str | None = None

    def is_valid(self) -> bool:
        return bool(self.base_url) and bool(self.auth_key_type_a)


@dataclass(frozen=True, slots=True)
class CosBackendConfig:
    """Credentials and endpoints of the object store.

    Validation happens at construction: an instance that exists is usable.
    """

    secret_id: str
    secret_key: str
    service_base_url: str
    accelerated_upload_base_url: str | None = None
    cdn: CdnConfig | None = None

    def __post_init__(self) -> None:
        if not self.secret_id or not self.secret_key:
            raise ConfigurationError(
                "COS_SECRET_ID and COS_SECRET_KEY are required"
            )
        service_base_url = _normalize_base_url(
            self.service_base_url, "COS_SERVICE_BASE_URL"
        )
        if not service_base_url:
            raise ConfigurationError("COS_SERVICE_BASE_URL is required")
        object.__setattr__(self, "service_base_url", service_base_url)
        object.__setattr__(
            self,
            "accelerated_upload_base_url",
            _normalize_base_url(
                self.accelerated_upload_base_url, "COS_ACCELERATED_UPLOAD_BASE_URL"
            ),
        )
        if self.cdn is not None and self.cdn.is_valid():
            object.__setattr__(
                self,
                "cdn",
                CdnConfig(
                    base_url=_normalize_base_url(self.cdn.base_url, "CDN_BASE_URL"),
                    auth_key_type_a=self.cdn.auth_key_type_a,
                ),
            )

    @property
    def upload_base_url(self) -> str:
        return self.accelerated_upload_base_url or self.service_base_url

    @property
    def cdn_enabled(self) -> bool:
        return self.cdn is not None and self.cdn.is_valid()

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CosBackendConfig":
        return cls(
            secret_id=settings.COS_SECRET_ID or "",
            secret_key=settings.COS_SECRET_KEY or "",
            service_base_url=settings.COS_SERVICE_BASE_URL or "",
            accelerated_upload_base_url=settings.COS_ACCELERATED_UPLOAD_BASE_URL,
            cdn=CdnConfig(
                base_url=settings.CDN_BASE_URL,
                auth_key_type_a=settings.CDN_AUTH_KEY_TYPE_A,
            ),
        )
