from __future__ import annotations

import logging
import threading

from fastapi import Header, HTTPException, Request

from blobstore.common.config import get_settings
from blobstore.infra.storage.client import ConfigurationError
from blobstore.services.blob_storage import BlobStorage, CosBlobStorage

logger = logging.getLogger("http")

_storage_lock = threading.Lock()


def get_blob_storage(request: Request) -> BlobStorage:
    """Storage instance owned by the application, built on first use."""
    storage = getattr(request.app.state, "blob_storage", None)
    if storage is not None:
        return storage
    with _storage_lock:
        storage = getattr(request.app.state, "blob_storage", None)
        if storage is None:
            try:
                storage = CosBlobStorage.from_settings(get_settings())
            except ConfigurationError as exc:
                raise HTTPException(
                    status_code=503,
                    detail={"message": str(exc), "error_code": "storage_not_configured"},
                ) from exc
            request.app.state.blob_storage = storage
    return storage


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if settings.API_KEY_ENABLED:
        api_key_expected = getattr(settings, "API_KEY", None)
        if not x_api_key or (api_key_expected and x_api_key != api_key_expected):
            raise HTTPException(status_code=401, detail="Invalid API key")


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    settings = get_settings()
    admin_key = getattr(settings, "DESTRUCTIVE_API_KEY", None)
    if not admin_key:
        raise HTTPException(status_code=503, detail="Blob deletion is disabled")
    if x_admin_key != admin_key:
        preview = "<missing>"
        if x_admin_key:
            preview = f"{x_admin_key[:4]}***"
        logger.warning(
            "admin_key_mismatch admin_key_preview=%s",
            preview,
        )
        raise HTTPException(status_code=403, detail="Forbidden")
