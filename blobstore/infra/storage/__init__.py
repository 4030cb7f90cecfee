"""Content-addressable blob storage engine for the object store backend.

This package signs and sends requests to the object store, maps digests to
storage keys, uploads blobs (monolithic or multipart) and builds download URLs.
"""

from .client import (
    CleanupFailure,
    ConfigurationError,
    CosErrorMessage,
    ObjectNotFoundError,
    OperationCancelledError,
    PartDescriptor,
    ProtocolError,
    ResolvedObject,
    StorageError,
    TransientTransportError,
    UploadSession,
)
from .config import CdnConfig, CosBackendConfig

__all__ = [
    "CdnConfig",
    "CleanupFailure",
    "ConfigurationError",
    "CosBackendConfig",
    "CosErrorMessage",
    "ObjectNotFoundError",
    "OperationCancelledError",
    "PartDescriptor",
    "ProtocolError",
    "ResolvedObject",
    "StorageError",
    "TransientTransportError",
    "UploadSession",
]
