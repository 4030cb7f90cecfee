"""Blob content sources that can be reopened for every upload attempt."""

from __future__ import annotations

import io
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol, Union, runtime_checkable


@runtime_checkable
class BlobSource(Protocol):
    """Content that can hand out independent read handles.

    Each ``open()`` returns a new handle positioned at offset 0, so parts of
    a multipart upload can be read concurrently without sharing a handle.
    The content must not change while an upload is in progress.
    """

    @property
    def size(self) -> int: ...

    def open(self) -> BinaryIO: ...


@dataclass(frozen=True, slots=True)
class FileBlobSource:
    """Blob stored in a (temporary) file on local disk."""

    path: Path

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    def open(self) -> BinaryIO:
        return self.path.open("rb")


@dataclass(frozen=True, slots=True)
class BytesBlobSource:
    """Blob held in memory."""

    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def open(self) -> BinaryIO:
        return io.BytesIO(self.data)


BlobContent = Union[BlobSource, bytes, bytearray, memoryview, str, os.PathLike]


def as_blob_source(content: BlobContent) -> BlobSource:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return BytesBlobSource(bytes(content))
    if isinstance(content, (str, os.PathLike)):
        return FileBlobSource(Path(content))
    if isinstance(content, BlobSource):
        return content
    raise TypeError(f"Unsupported blob content type: {type(content).__name__}")
