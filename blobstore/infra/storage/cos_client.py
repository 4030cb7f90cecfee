"""Signed HTTP transport for the object store.

Dependencies:
    - requests
"""

from __future__ import annotations

import io
import logging
from typing import Any, BinaryIO, Mapping, Sequence
from urllib.parse import quote
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import requests

from blobstore.infra.observability.metrics import STORAGE_REQUESTS
from blobstore.infra.storage.client import (
    CosErrorMessage,
    ObjectNotFoundError,
    PartDescriptor,
    ProtocolError,
    TransientTransportError,
)
from blobstore.infra.storage.signer import RequestSigner
from blobstore.infra.storage.streams import md5_base64

logger = logging.getLogger("blobstore.storage")

OCTET_STREAM = "application/octet-stream"
XML_CONTENT_TYPE = "application/xml"


def _is_success(response: requests.Response) -> bool:
    # requests treats 1xx/3xx as ok; the store only acknowledges with 2xx
    return 200 <= response.status_code < 300


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_xml(body: bytes | str) -> ElementTree.Element:
    try:
        return ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise ProtocolError(f"Malformed XML in object store response: {exc}") from exc


def _child_text(element: ElementTree.Element, name: str) -> str | None:
    for child in element.iter():
        if _local_name(child.tag) == name:
            return (child.text or "").strip() or None
    return None


def parse_upload_id(body: bytes | str) -> str:
    """Extract ``<UploadId>`` from an InitiateMultipartUpload response."""
    upload_id = _child_text(_parse_xml(body), "UploadId")
    if not upload_id:
        raise ProtocolError("Object store response missing UploadId")
    return upload_id


def parse_error_message(body: bytes | str | None) -> CosErrorMessage | None:
    """Parse the object store's ``<Error>`` document, if there is one."""
    if not body:
        return None
    try:
        root = _parse_xml(body)
    except ProtocolError:
        return None
    if _local_name(root.tag) != "Error":
        return None
    return CosErrorMessage(
        code=_child_text(root, "Code"),
        message=_child_text(root, "Message"),
        resource=_child_text(root, "Resource"),
        request_id=_child_text(root, "RequestId"),
        trace_id=_child_text(root, "TraceId"),
    )


def build_complete_multipart_body(parts: Sequence[PartDescriptor]) -> bytes:
    """Render the CompleteMultipartUpload document, parts in ascending order."""
    chunks = ["<CompleteMultipartUpload>"]
    for part in sorted(parts, key=lambda p: p.part_number):
        if not part.etag:
            raise ValueError(f"Part {part.part_number} has no ETag")
        chunks.append(
            f"<Part><PartNumber>{part.part_number}</PartNumber>"
            f"<ETag>{escape(part.etag)}</ETag></Part>"
        )
    chunks.append("</CompleteMultipartUpload>")
    return "".join(chunks).encode("utf-8")


def with_upload_id(uri: str, upload_id: str, **params: Any) -> str:
    query = "&".join(f"{key}={value}" for key, value in params.items())
    prefix = f"{query}&" if query else ""
    return f"{uri}?{prefix}uploadId={quote(upload_id, safe='')}"


class CosClient:
    """Sends signed requests to the object store over one shared session.

    The session is created here (or injected) and reused by every call,
    including concurrent part uploads.
    """

    def __init__(
        self,
        signer: RequestSigner,
        *,
        session: requests.Session | None = None,
        timeout: float = 60 * 60,
    ) -> None:
        self._signer = signer
        self._session = session or requests.Session()
        self._timeout = timeout

    @property
    def session(self) -> requests.Session:
        return self._session

    def close(self) -> None:
        self._session.close()

    def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        stream: bool = False,
        sign: bool = True,
    ) -> requests.Response:
        request = requests.Request(
            method, url, headers=dict(headers or {}), data=body
        ).prepare()
        if sign:
            request.headers["Authorization"] = self._signer.sign_prepared(request)
        try:
            response = self._session.send(request, timeout=self._timeout, stream=stream)
        except requests.RequestException as exc:
            STORAGE_REQUESTS.labels(operation, "error").inc()
            raise TransientTransportError(
                f"{method} {url} failed: {exc}"
            ) from exc
        outcome = "success" if _is_success(response) else str(response.status_code)
        STORAGE_REQUESTS.labels(operation, outcome).inc()
        return response

    @staticmethod
    def _ensure_success(
        response: requests.Response, action: str, *, not_found: bool = False
    ) -> None:
        if _is_success(response):
            return
        error = parse_error_message(response.content)
        detail = f" ({error.describe()})" if error and error.describe() else ""
        if not_found and response.status_code == 404:
            raise ObjectNotFoundError(f"Failed to {action}: object not found{detail}")
        raise TransientTransportError(
            f"Failed to {action}: HTTP {response.status_code}{detail}",
            status_code=response.status_code,
            error=error,
        )

    def head_object(self, uri: str) -> bool:
        """Return ``True`` when the object exists (HTTP 200)."""
        response = self._send("head_object", "HEAD", uri)
        logger.debug(
            "Located blob %s: status=%s",
            uri,
            response.status_code,
            extra={"extra": {"uri": uri, "status": response.status_code}},
        )
        return response.status_code == 200

    def put_object(
        self,
        uri: str,
        body: BinaryIO,
        *,
        content_length: int,
        content_md5: str,
        content_type: str = OCTET_STREAM,
    ) -> requests.Response:
        headers = {
            "Content-Length": str(content_length),
            "Content-MD5": content_md5,
            "Content-Type": content_type,
        }
        response = self._send(
            "put_object",
            "PUT",
            uri,
            headers=headers,
            body=body if content_length else b"",
        )
        self._ensure_success(response, "upload blob")
        return response

    def initiate_multipart_upload(self, uri: str) -> str:
        response = self._send(
            "initiate_multipart_upload",
            "POST",
            f"{uri}?uploads",
            headers={"Content-Length": "0", "Content-Type": OCTET_STREAM},
            body=b"",
        )
        self._ensure_success(response, "initiate multipart upload")
        upload_id = parse_upload_id(response.content)
        logger.debug(
            "Initialized multipart upload session for blob %s",
            uri,
            extra={"extra": {"uri": uri, "upload_id": upload_id}},
        )
        return upload_id

    def upload_part(
        self,
        uri: str,
        upload_id: str,
        part_number: int,
        body: BinaryIO,
        *,
        content_length: int,
        content_md5: str,
    ) -> str:
        url = with_upload_id(uri, upload_id, partNumber=part_number)
        headers = {
            "Content-Length": str(content_length),
            "Content-MD5": content_md5,
            "Content-Type": OCTET_STREAM,
        }
        response = self._send("upload_part", "PUT", url, headers=headers, body=body)
        self._ensure_success(response, f"upload part {part_number}")
        etag = response.headers.get("ETag")
        if not etag:
            raise ProtocolError(f"Object store response missing ETag for part {part_number}")
        return etag

    def complete_multipart_upload(
        self, uri: str, upload_id: str, parts: Sequence[PartDescriptor]
    ) -> None:
        body = build_complete_multipart_body(parts)
        headers = {
            "Content-MD5": md5_base64(io.BytesIO(body)),
            "Content-Type": XML_CONTENT_TYPE,
        }
        response = self._send(
            "complete_multipart_upload",
            "POST",
            with_upload_id(uri, upload_id),
            headers=headers,
            body=body,
        )
        self._ensure_success(response, "complete multipart upload")

    def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        response = self._send(
            "abort_multipart_upload", "DELETE", with_upload_id(uri, upload_id)
        )
        self._ensure_success(response, "abort multipart upload")

    def delete_object(self, uri: str) -> None:
        response = self._send("delete_object", "DELETE", uri)
        self._ensure_success(response, "delete blob", not_found=True)

    def get(self, url: str) -> requests.Response:
        """Stream an object through an already-signed (presigned) URL."""
        response = self._send("get_object", "GET", url, stream=True, sign=False)
        try:
            self._ensure_success(response, "read blob", not_found=True)
        except Exception:
            response.close()
            raise
        return response
