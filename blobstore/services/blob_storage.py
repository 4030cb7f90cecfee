"""Blob storage service backed by the object store.

This module provides the facade used by the registry's blob endpoints and the
pull-through synchronization workflow: existence probes, reads, deletes,
uploads and download URL generation, all keyed by content digest.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import BinaryIO, Callable, Protocol

import requests

from blobstore.common.config import (
    DEFAULT_PART_SIZE_BYTES,
    DEFAULT_UPLOAD_BATCH_SIZE,
    Settings,
    get_settings,
)
from blobstore.common.logging import mask_secret
from blobstore.infra.storage.config import CosBackendConfig
from blobstore.infra.storage.cos_client import CosClient
from blobstore.infra.storage.download import DownloadUrlGenerator, random_nonce
from blobstore.infra.storage.keys import ObjectKeyResolver
from blobstore.infra.storage.retry import RetryPolicy, raise_if_cancelled
from blobstore.infra.storage.signer import RequestSigner
from blobstore.infra.storage.sources import BlobContent, as_blob_source
from blobstore.infra.storage.uploader import UploadOrchestrator

logger = logging.getLogger("blobstore.storage")


class BlobStorage(Protocol):
    """Contract consumed by the blob accept/serve handlers."""

    @property
    def supports_downloading(self) -> bool: ...

    def try_locate_existing(self, digest: str) -> str | None:
        """Return the blob's location, or ``None`` if it is not stored."""
        ...

    def read(
        self, location: str, *, cancel_event: threading.Event | None = None
    ) -> BinaryIO:
        """Open the stored blob for streaming."""
        ...

    def delete(self, location: str) -> None:
        """Remove a stored blob."""
        ...

    def save(
        self,
        content: BlobContent,
        digest: str,
        repo_name: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """Store ``content`` under ``digest`` and return its location."""
        ...

    def generate_download_url(self, location: str) -> str:
        """Return a URL that reads the blob without further authentication."""
        ...


class CosBlobStorage:
    """Blob storage on the object store, addressed by content digest.

    One instance owns one HTTP session, shared by reference across all of its
    operations, including concurrent part uploads.
    """

    supports_downloading = True

    def __init__(
        self,
        config: CosBackendConfig,
        *,
        session: requests.Session | None = None,
        timeout: float = 60 * 60,
        part_size: int = DEFAULT_PART_SIZE_BYTES,
        batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        nonce_provider: Callable[[], str] = random_nonce,
    ) -> None:
        self._config = config
        self._signer = RequestSigner(config.secret_id, config.secret_key, clock=clock)
        self._client = CosClient(self._signer, session=session, timeout=timeout)
        self._upload_keys = ObjectKeyResolver(config.upload_base_url)
        self._uploader = UploadOrchestrator(
            self._client,
            part_size=part_size,
            batch_size=batch_size,
            retry_policy=retry_policy,
        )
        self._downloads = DownloadUrlGenerator(
            config.service_base_url,
            self._signer,
            cdn=config.cdn,
            clock=clock,
            nonce_provider=nonce_provider,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        session: requests.Session | None = None,
    ) -> "CosBlobStorage":
        """Build the storage from application settings.

        Raises:
            ConfigurationError: If credentials or the service URL are missing.
        """
        settings = settings or get_settings()
        config = CosBackendConfig.from_settings(settings)
        logger.info(
            "Configured blob storage backend %s (secret_id=%s, accelerated=%s, cdn=%s)",
            config.service_base_url,
            mask_secret(config.secret_id),
            bool(config.accelerated_upload_base_url),
            config.cdn_enabled,
        )
        return cls(
            config,
            session=session,
            timeout=settings.STORAGE_REQUEST_TIMEOUT_SECONDS,
            part_size=settings.STORAGE_PART_SIZE_BYTES,
            batch_size=settings.STORAGE_UPLOAD_BATCH_SIZE,
            retry_policy=RetryPolicy(
                attempts=settings.STORAGE_MAX_RETRIES,
                backoff_seconds=settings.STORAGE_RETRY_BACKOFF_SECONDS,
            ),
        )

    @property
    def config(self) -> CosBackendConfig:
        return self._config

    @property
    def uploader(self) -> UploadOrchestrator:
        return self._uploader

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CosBlobStorage":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def try_locate_existing(self, digest: str) -> str | None:
        resolved = self._upload_keys.resolve(digest)
        if self._client.head_object(resolved.uri):
            return resolved.object_key
        return None

    def read(
        self, location: str, *, cancel_event: threading.Event | None = None
    ) -> BinaryIO:
        raise_if_cancelled(cancel_event, "read")
        url = self._downloads.presigned_url(location)
        logger.debug("Reading blob content %s", location, extra={"extra": {"location": location}})
        response = self._client.get(url)
        response.raw.decode_content = True
        return response.raw

    def delete(self, location: str) -> None:
        resource_uri = f"{self._config.service_base_url}/{location}"
        self._client.delete_object(resource_uri)
        logger.info(
            "Blob deleted %s",
            resource_uri,
            extra={"extra": {"uri": resource_uri, "location": location}},
        )

    def save(
        self,
        content: BlobContent,
        digest: str,
        repo_name: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> str:
        resolved = self._upload_keys.resolve(digest)
        source = as_blob_source(content)
        logger.debug(
            "Saving blob %s for repository %s",
            digest,
            repo_name,
            extra={
                "extra": {
                    "digest": digest,
                    "repo_name": repo_name,
                    "uri": resolved.uri,
                    "size": source.size,
                }
            },
        )
        self._uploader.save(source, resolved.uri, cancel_event=cancel_event)
        return resolved.object_key

    def generate_download_url(self, location: str) -> str:
        return self._downloads.generate(location)

