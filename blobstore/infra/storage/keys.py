"""Digest to storage key mapping."""

from __future__ import annotations

import re

from blobstore.infra.storage.client import ResolvedObject

DIGEST_PATTERN = re.compile(
    r"^(?P<algorithm>[A-Za-z0-9]+(?:[+._-][A-Za-z0-9]+)*):(?P<encoded>[A-Za-z0-9=_-]{2,})$"
)


def parse_digest(digest: str) -> tuple[str, str]:
    """Split ``"<algorithm>:<hex>"`` into its two halves."""
    match = DIGEST_PATTERN.match(digest or "")
    if not match:
        raise ValueError(f"Invalid content digest: {digest!r}")
    return match.group("algorithm"), match.group("encoded")


def object_key_for(digest: str) -> str:
    """Return the sharded key ``<algorithm>/<hex[0:2]>/<hex>``."""
    algorithm, encoded = parse_digest(digest)
    return f"{algorithm}/{encoded[:2]}/{encoded}"


class ObjectKeyResolver:
    """Maps digests to object keys and absolute resource URIs."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    def resolve(self, digest: str) -> ResolvedObject:
        object_key = object_key_for(digest)
        return ResolvedObject(object_key=object_key, uri=f"{self._base_url}/{object_key}")
