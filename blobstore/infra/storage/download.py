"""Download URLs for stored blobs: presigned object store URLs or CDN URLs."""

from __future__ import annotations

import hashlib
import time
import uuid
from typing import Callable

from blobstore.infra.storage.config import CdnConfig
from blobstore.infra.storage.signer import RequestSigner


def random_nonce() -> str:
    """Fresh 128-bit hex token."""
    return uuid.uuid4().hex


class DownloadUrlGenerator:
    """Builds time-limited URLs that read a blob without an Authorization header.

    When a valid CDN configuration is present, URLs use the CDN's type-A
    authentication (``sign=<timestamp>-<nonce>-0-<md5>``); otherwise the
    object store URL is presigned with a query-only signature.
    """

    def __init__(
        self,
        service_base_url: str,
        signer: RequestSigner,
        *,
        cdn: CdnConfig | None = None,
        clock: Callable[[], float] = time.time,
        nonce_provider: Callable[[], str] = random_nonce,
    ) -> None:
        self._service_base_url = service_base_url.rstrip("/")
        self._signer = signer
        self._cdn = cdn if cdn is not None and cdn.is_valid() else None
        self._clock = clock
        self._nonce_provider = nonce_provider

    @property
    def uses_cdn(self) -> bool:
        return self._cdn is not None

    def generate(self, location: str) -> str:
        if self._cdn is not None:
            return self.cdn_url(location)
        return self.presigned_url(location)

    def presigned_url(self, location: str) -> str:
        resource_uri = f"{self._service_base_url}/{location}"
        signature = self._signer.sign("GET", resource_uri, query_only=True)
        return f"{resource_uri}?{signature}"

    def cdn_url(self, location: str) -> str:
        if self._cdn is None:
            raise ValueError("CDN downloads are not configured")
        base_url = (self._cdn.base_url or "").rstrip("/")
        timestamp = int(self._clock())
        nonce = self._nonce_provider()
        string_to_sign = (
            f"/{location}-{timestamp}-{nonce}-0-{self._cdn.auth_key_type_a}"
        )
        md5_hex = hashlib.md5(string_to_sign.encode("utf-8")).hexdigest()
        return f"{base_url}/{location}?sign={timestamp}-{nonce}-0-{md5_hex}"
