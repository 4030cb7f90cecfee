"""Bounded read-only views over seekable binary streams."""

from __future__ import annotations

import base64
import hashlib
import io
from typing import BinaryIO

MD5_CHUNK_SIZE = 1024 * 1024


class BoundedStreamView(io.RawIOBase):
    """Read-only window of at most ``length`` bytes over ``source``.

    The window starts at the source's current position. Its length is
    ``min(length, bytes remaining in source)``; reads stop at the window end
    and seeks are only accepted inside ``[0, length)``. Closing the view
    closes the source.
    """

    def __init__(self, source: BinaryIO, length: int) -> None:
        super().__init__()
        if length < 0:
            raise ValueError("length must not be negative")
        self._source = source
        self._origin = source.tell()
        source_end = source.seek(0, io.SEEK_END)
        source.seek(self._origin, io.SEEK_SET)
        self._length = max(0, min(length, source_end - self._origin))
        self._position = 0

    @property
    def length(self) -> int:
        return self._length

    def __len__(self) -> int:
        return self._length

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False

    def _ensure_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed stream")

    def readinto(self, buffer) -> int:
        self._ensure_open()
        remaining = self._length - self._position
        if remaining <= 0:
            return 0
        view = memoryview(buffer).cast("B")
        wanted = min(len(view), remaining)
        data = self._source.read(wanted)
        if not data:
            return 0
        count = len(data)
        view[:count] = data
        self._position += count
        return count

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._ensure_open()
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._position + offset
        elif whence == io.SEEK_END:
            target = self._length + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if not 0 <= target < self._length:
            raise ValueError(
                f"Seek offset {target} outside of view [0, {self._length})"
            )
        self._source.seek(self._origin + target, io.SEEK_SET)
        self._position = target
        return self._position

    def tell(self) -> int:
        self._ensure_open()
        return self._position

    def close(self) -> None:
        if not self.closed:
            source = getattr(self, "_source", None)
            try:
                if source is not None:
                    source.close()
            finally:
                super().close()


def md5_base64(stream: BinaryIO) -> str:
    """Base64 MD5 of everything left in ``stream``, as sent in Content-MD5."""
    digest = hashlib.md5()
    while True:
        chunk = stream.read(MD5_CHUNK_SIZE)
        if not chunk:
            break
        digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")
