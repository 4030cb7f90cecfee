from .blob_storage import BlobStorage, CosBlobStorage

__all__ = [
    "BlobStorage",
    "CosBlobStorage",
]
