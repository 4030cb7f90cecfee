"""Object store error taxonomy and shared data types.

This module defines the exceptions raised by the blob storage engine and the
value objects exchanged between the signer, the transport and the upload
orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class ConfigurationError(StorageError):
    """Raised when the storage backend is constructed with invalid settings."""


class ProtocolError(StorageError):
    """Raised when the object store answers with a malformed response."""


class ObjectNotFoundError(StorageError):
    """Raised when a stored object does not exist."""


class OperationCancelledError(StorageError):
    """Raised when the caller cancelled a storage operation."""


@dataclass(frozen=True, slots=True)
class CosErrorMessage:
    """Error document returned by the object store in a non-2xx response."""

    code: str | None = None
    message: str | None = None
    resource: str | None = None
    request_id: str | None = None
    trace_id: str | None = None

    def describe(self) -> str:
        parts = [
            f"{label}={value}"
            for label, value in (
                ("code", self.code),
                ("message", self.message),
                ("request_id", self.request_id),
            )
            if value
        ]
        return ", ".join(parts)


class TransientTransportError(StorageError):
    """Raised for network failures and non-success responses.

    These failures are retryable: an upload attempt that ends with this error
    may be repeated by the retry policy.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error: CosErrorMessage | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error


class CleanupFailure(StorageError):
    """Raised internally when a multipart session could not be aborted.

    Never surfaced to callers; the original upload error always wins.
    """

    def __init__(self, upload_id: str, cause: BaseException) -> None:
        super().__init__(f"Failed to abort multipart upload {upload_id}: {cause}")
        self.upload_id = upload_id
        self.cause = cause


@dataclass(frozen=True, slots=True)
class ResolvedObject:
    """Storage key derived from a digest, with its absolute resource URI."""

    object_key: str
    uri: str


@dataclass(frozen=True, slots=True)
class PartDescriptor:
    """A byte range of a multipart upload.

    ``etag`` stays ``None`` until the part has been uploaded.
    """

    part_number: int
    byte_offset: int
    byte_length: int
    content_md5: str | None = None
    etag: str | None = None


@dataclass(slots=True)
class UploadSession:
    """State of one multipart upload tracked by the object store."""

    upload_id: str
    uri: str
    parts: list[PartDescriptor] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return bool(self.parts) and all(part.etag for part in self.parts)
