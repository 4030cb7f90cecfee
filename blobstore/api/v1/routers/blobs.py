"""Blob API router.

This module serves content-addressed blobs from the object store: existence
probes, downloads (redirect or proxied stream), download URL generation and
administrative deletion.
"""

from __future__ import annotations

from typing import BinaryIO, Iterator

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import RedirectResponse, StreamingResponse

from blobstore.api.v1.deps import get_blob_storage, require_admin_key
from blobstore.api.v1.schemas.blobs import BlobDownloadUrlOut
from blobstore.common.config import get_settings
from blobstore.infra.storage.client import (
    ConfigurationError,
    ObjectNotFoundError,
    StorageError,
)
from blobstore.infra.storage.keys import object_key_for
from blobstore.services.blob_storage import BlobStorage

router = APIRouter()

STREAM_CHUNK_SIZE = 64 * 1024


def _storage_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ObjectNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(
            status_code=503,
            detail={"message": str(exc), "error_code": "storage_not_configured"},
        )
    return HTTPException(status_code=502, detail=str(exc))


def _locate_or_404(storage: BlobStorage, digest: str) -> str:
    try:
        location = storage.try_locate_existing(digest)
    except (ValueError, StorageError) as exc:
        raise _storage_http_error(exc) from exc
    if location is None:
        raise HTTPException(status_code=404, detail=f"Blob {digest} not found")
    return location


def _iter_stream(stream: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = stream.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


@router.head(
    "/blobs/{digest}",
    summary="Check blob existence",
    description="Return 200 if a blob with the digest is stored, 404 otherwise.",
)
def head_blob(
    digest: str,
    storage: BlobStorage = Depends(get_blob_storage),
) -> Response:
    _locate_or_404(storage, digest)
    return Response(status_code=status.HTTP_200_OK)


@router.get(
    "/blobs/{digest}",
    summary="Download blob",
    description="Redirect to a download URL, or stream the blob content.",
    response_model=None,
)
def get_blob(
    digest: str,
    storage: BlobStorage = Depends(get_blob_storage),
) -> Response:
    location = _locate_or_404(storage, digest)
    if get_settings().BLOB_REDIRECT_DOWNLOADS and storage.supports_downloading:
        try:
            url = storage.generate_download_url(location)
        except (ValueError, StorageError) as exc:
            raise _storage_http_error(exc) from exc
        return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        stream = storage.read(location)
    except (ValueError, StorageError) as exc:
        raise _storage_http_error(exc) from exc
    return StreamingResponse(
        _iter_stream(stream),
        media_type="application/octet-stream",
        headers={"Docker-Content-Digest": digest},
    )


@router.get(
    "/blobs/{digest}/download-url",
    response_model=BlobDownloadUrlOut,
    summary="Get blob download URL",
    description="Generate a time-limited URL that reads the blob directly.",
)
def get_blob_download_url(
    digest: str,
    storage: BlobStorage = Depends(get_blob_storage),
) -> BlobDownloadUrlOut:
    location = _locate_or_404(storage, digest)
    try:
        url = storage.generate_download_url(location)
    except (ValueError, StorageError) as exc:
        raise _storage_http_error(exc) from exc
    return BlobDownloadUrlOut(digest=digest, location=location, url=url)


@router.delete(
    "/blobs/{digest}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete blob",
    description="Remove a stored blob. Requires the administrative key.",
    dependencies=[Depends(require_admin_key)],
)
def delete_blob(
    digest: str,
    storage: BlobStorage = Depends(get_blob_storage),
) -> Response:
    try:
        storage.delete(object_key_for(digest))
    except (ValueError, StorageError) as exc:
        raise _storage_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
