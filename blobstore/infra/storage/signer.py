"""Request signing for the object store's ``q-sign`` authorization scheme.

Every call to the object store carries a signature computed over a canonical
form of the request: lower-cased method, path, sorted query parameters and
sorted headers. The server recomputes the same string, so the
canonicalization below has to match it byte for byte.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from email.utils import formatdate
from typing import Callable, Iterable, Mapping, MutableMapping
from urllib.parse import parse_qsl, quote, urlsplit

import requests
from requests.structures import CaseInsensitiveDict

SIGN_ALGORITHM = "sha1"
KEY_VALIDITY_SECONDS = 30 * 60

# Entity headers of a request body; these stay signed in query-only mode.
CONTENT_HEADER_NAMES = frozenset(
    {
        "allow",
        "content-disposition",
        "content-encoding",
        "content-language",
        "content-length",
        "content-location",
        "content-md5",
        "content-range",
        "content-type",
        "expires",
        "last-modified",
    }
)


def hmac_sha1_hex(key: str, message: str) -> str:
    return hmac.new(
        key.encode("utf-8"), message.encode("utf-8"), hashlib.sha1
    ).hexdigest()


def sha1_hex(message: str) -> str:
    return hashlib.sha1(message.encode("utf-8")).hexdigest()


def cos_quote(raw: str) -> str:
    """Percent-encode a key or value for the canonical request.

    Only letters, digits and ``-_.~`` are kept; space becomes ``%20`` and
    ``!()*`` are escaped as well.
    """
    return quote(raw, safe="")


def _as_text(value: object) -> str:
    if isinstance(value, (list, tuple, set)):
        raise ValueError("Multi-valued headers and parameters are not supported")
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _canonicalize(pairs: Iterable[tuple[str, object]]) -> tuple[str, str]:
    encoded: dict[str, str] = {}
    for key, value in pairs:
        name = cos_quote(key).lower()
        if name in encoded:
            raise ValueError(
                f"Multi-valued headers and parameters are not supported: {key!r}"
            )
        encoded[name] = cos_quote(_as_text(value))
    # Keys are pure ASCII once quoted, so str ordering is byte ordering.
    names = sorted(encoded)
    canonical = "&".join(f"{name}={encoded[name]}" for name in names)
    return canonical, ";".join(names)


def canonical_query(url: str) -> tuple[str, str]:
    """Return ``(canonical query string, url param list)`` for a URL."""
    query = urlsplit(url).query
    if not query:
        return "", ""
    return _canonicalize(parse_qsl(query, keep_blank_values=True))


def canonical_headers(
    request_headers: Mapping[str, object] | None,
    content_headers: Mapping[str, object] | None = None,
) -> tuple[str, str]:
    """Return ``(canonical header string, header list)``."""
    pairs: list[tuple[str, object]] = []
    for headers in (request_headers, content_headers):
        if headers:
            pairs.extend(headers.items())
    return _canonicalize(pairs)


class RequestSigner:
    """Computes ``Authorization`` values for requests to the object store."""

    def __init__(
        self,
        secret_id: str,
        secret_key: str,
        *,
        clock: Callable[[], float] = time.time,
        validity_seconds: int = KEY_VALIDITY_SECONDS,
    ) -> None:
        self._secret_id = secret_id
        self._secret_key = secret_key
        self._clock = clock
        self._validity_seconds = validity_seconds

    @property
    def secret_id(self) -> str:
        return self._secret_id

    def sign(
        self,
        method: str,
        url: str,
        request_headers: MutableMapping[str, object] | None = None,
        content_headers: Mapping[str, object] | None = None,
        *,
        query_only: bool = False,
    ) -> str:
        """Sign a request and return the ``q-sign-algorithm=...`` string.

        In header mode ``Host`` and ``Date`` are written into
        ``request_headers`` before signing; callers must send them unchanged.
        With ``query_only`` (presigned URLs) the request headers are left out
        and only ``content_headers`` take part.
        """
        parsed = urlsplit(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Cannot sign a request without an absolute URL: {url!r}")

        now = int(self._clock())
        key_time = f"{now};{now + self._validity_seconds}"

        if query_only:
            signed_request_headers: Mapping[str, object] | None = None
        else:
            if request_headers is None:
                request_headers = CaseInsensitiveDict()
            request_headers["Host"] = parsed.netloc.rpartition("@")[2]
            request_headers["Date"] = formatdate(now, usegmt=True)
            signed_request_headers = request_headers

        sign_key = hmac_sha1_hex(self._secret_key, key_time)
        http_parameters, url_param_list = canonical_query(url)
        http_headers, header_list = canonical_headers(
            signed_request_headers, content_headers
        )

        http_string = "\n".join(
            [method.lower(), parsed.path or "/", http_parameters, http_headers, ""]
        )
        string_to_sign = "\n".join(
            [SIGN_ALGORITHM, key_time, sha1_hex(http_string), ""]
        )
        signature = hmac_sha1_hex(sign_key, string_to_sign)

        return "&".join(
            [
                f"q-sign-algorithm={SIGN_ALGORITHM}",
                f"q-ak={self._secret_id}",
                f"q-sign-time={key_time}",
                f"q-key-time={key_time}",
                f"q-header-list={header_list}",
                f"q-url-param-list={url_param_list}",
                f"q-signature={signature}",
            ]
        )

    def sign_prepared(
        self, request: requests.PreparedRequest, *, query_only: bool = False
    ) -> str:
        """Sign a prepared ``requests`` request, updating its Host/Date headers."""
        request_headers: CaseInsensitiveDict = CaseInsensitiveDict()
        content_headers: CaseInsensitiveDict = CaseInsensitiveDict()
        for name, value in request.headers.items():
            if name.lower() == "authorization":
                continue
            if name.lower() in CONTENT_HEADER_NAMES:
                content_headers[name] = value
            else:
                request_headers[name] = value

        signature = self.sign(
            request.method or "GET",
            request.url or "",
            request_headers,
            content_headers,
            query_only=query_only,
        )
        if not query_only:
            request.headers["Host"] = request_headers["Host"]
            request.headers["Date"] = request_headers["Date"]
        return signature
