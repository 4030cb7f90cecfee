"""Monolithic and multipart blob uploads.

Blobs smaller than one part go up with a single PUT. Larger blobs use the
object store's multipart protocol::

    Initiated -> PartsUploading -> Completed | Aborted

Parts are uploaded in fixed-size batches; every part of a batch runs
concurrently and the next batch only starts once the whole batch finished.
Content hashes are computed once per upload (or part) and reused across
retries, which assumes the source content does not change in the meantime.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Iterator, Sequence

from blobstore.common.config import (
    DEFAULT_PART_SIZE_BYTES,
    DEFAULT_UPLOAD_BATCH_SIZE,
)
from blobstore.infra.observability.metrics import MULTIPART_ABORTS, UPLOADED_BYTES
from blobstore.infra.storage.client import CleanupFailure, PartDescriptor, UploadSession
from blobstore.infra.storage.cos_client import CosClient
from blobstore.infra.storage.retry import RetryPolicy, raise_if_cancelled
from blobstore.infra.storage.sources import BlobSource
from blobstore.infra.storage.streams import BoundedStreamView, md5_base64

logger = logging.getLogger("blobstore.storage")


def plan_parts(size: int, part_size: int) -> list[PartDescriptor]:
    """Split ``size`` bytes into consecutive parts numbered from 1."""
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    part_count = math.ceil(size / part_size)
    return [
        PartDescriptor(
            part_number=index + 1,
            byte_offset=index * part_size,
            byte_length=min((index + 1) * part_size, size) - index * part_size,
        )
        for index in range(part_count)
    ]


def batched(parts: Sequence[PartDescriptor], batch_size: int) -> Iterator[list[PartDescriptor]]:
    for start in range(0, len(parts), batch_size):
        yield list(parts[start : start + batch_size])


class UploadOrchestrator:
    """Chooses between monolithic and multipart upload and drives it."""

    def __init__(
        self,
        client: CosClient,
        *,
        part_size: int = DEFAULT_PART_SIZE_BYTES,
        batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._client = client
        self._part_size = part_size
        self._batch_size = batch_size
        self._retry = retry_policy or RetryPolicy()

    @property
    def part_size(self) -> int:
        return self._part_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def save(
        self,
        source: BlobSource,
        uri: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        size = source.size
        if size < self._part_size:
            self.upload_monolithic(source, uri, size=size, cancel_event=cancel_event)
        else:
            self.upload_multipart(source, uri, size=size, cancel_event=cancel_event)

    def upload_monolithic(
        self,
        source: BlobSource,
        uri: str,
        *,
        size: int,
        cancel_event: threading.Event | None = None,
    ) -> None:
        with source.open() as stream:
            content_md5 = md5_base64(stream)

        def attempt() -> None:
            with source.open() as stream:
                self._client.put_object(
                    uri, stream, content_length=size, content_md5=content_md5
                )

        self._retry.run(attempt, operation_name="put_object", cancel_event=cancel_event)
        UPLOADED_BYTES.labels("monolithic").inc(size)
        logger.info(
            "Completed monolithic blob upload %s",
            uri,
            extra={"extra": {"uri": uri, "size": size}},
        )

    def upload_multipart(
        self,
        source: BlobSource,
        uri: str,
        *,
        size: int,
        cancel_event: threading.Event | None = None,
    ) -> UploadSession:
        parts = plan_parts(size, self._part_size)
        if not parts:
            raise ValueError("Multipart upload requires non-empty content")

        raise_if_cancelled(cancel_event, "initiate_multipart_upload")
        session = UploadSession(
            upload_id=self._client.initiate_multipart_upload(uri),
            uri=uri,
            parts=parts,
        )
        try:
            self._upload_parts(source, session, cancel_event)
            raise_if_cancelled(cancel_event, "complete_multipart_upload")
            self._client.complete_multipart_upload(
                session.uri, session.upload_id, session.parts
            )
        except Exception as exc:
            logger.warning(
                "Failed to upload blob %s: %s",
                uri,
                exc,
                extra={
                    "extra": {
                        "uri": uri,
                        "size": size,
                        "upload_id": session.upload_id,
                        "error": repr(exc),
                    }
                },
            )
            self._abort(session, exc)
            raise

        UPLOADED_BYTES.labels("multipart").inc(size)
        logger.info(
            "Completed multipart blob upload %s",
            uri,
            extra={
                "extra": {
                    "uri": uri,
                    "size": size,
                    "upload_id": session.upload_id,
                    "parts": len(session.parts),
                }
            },
        )
        return session

    def _upload_parts(
        self,
        source: BlobSource,
        session: UploadSession,
        cancel_event: threading.Event | None,
    ) -> None:
        uploaded: dict[int, PartDescriptor] = {}
        with ThreadPoolExecutor(
            max_workers=self._batch_size, thread_name_prefix="blob-part"
        ) as executor:
            for batch in batched(session.parts, self._batch_size):
                futures = [
                    executor.submit(
                        self._upload_part, source, session, part, cancel_event
                    )
                    for part in batch
                ]
                wait(futures)
                # First failure in part order wins; the rest of the batch has finished.
                for future in futures:
                    part = future.result()
                    uploaded[part.part_number] = part
        session.parts = [uploaded[part.part_number] for part in session.parts]

    def _upload_part(
        self,
        source: BlobSource,
        session: UploadSession,
        part: PartDescriptor,
        cancel_event: threading.Event | None,
    ) -> PartDescriptor:
        content_md5: str | None = None

        def attempt() -> str:
            nonlocal content_md5
            # One handle per attempt; concurrent parts never share a handle.
            stream = source.open()
            try:
                stream.seek(part.byte_offset)
            except Exception:
                stream.close()
                raise
            with BoundedStreamView(stream, self._part_size) as view:
                if content_md5 is None:
                    content_md5 = md5_base64(view)
                view.seek(0)
                return self._client.upload_part(
                    session.uri,
                    session.upload_id,
                    part.part_number,
                    view,
                    content_length=view.length,
                    content_md5=content_md5,
                )

        etag = self._retry.run(
            attempt, operation_name="upload_part", cancel_event=cancel_event
        )
        logger.debug(
            "Uploaded blob part %s of %s",
            part.part_number,
            session.uri,
            extra={
                "extra": {
                    "uri": session.uri,
                    "upload_id": session.upload_id,
                    "part_number": part.part_number,
                }
            },
        )
        return replace(part, content_md5=content_md5, etag=etag)

    def _abort(self, session: UploadSession, primary: BaseException) -> None:
        """Best-effort release of the multipart session; never raises."""
        try:
            self._client.abort_multipart_upload(session.uri, session.upload_id)
        except Exception as exc:
            failure = CleanupFailure(session.upload_id, exc)
            MULTIPART_ABORTS.labels("failed").inc()
            logger.warning(
                "%s (upload failed with: %s)",
                failure,
                primary,
                extra={
                    "extra": {
                        "uri": session.uri,
                        "upload_id": session.upload_id,
                        "error": repr(primary),
                        "cleanup_error": repr(exc),
                    }
                },
            )
            return
        MULTIPART_ABORTS.labels("succeeded").inc()
        logger.debug(
            "Aborted multipart upload session %s",
            session.upload_id,
            extra={"extra": {"uri": session.uri, "upload_id": session.upload_id}},
        )
