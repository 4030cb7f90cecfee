"""In-memory object store speaking the subset of the HTTP API used by the engine."""

from __future__ import annotations

import base64
import hashlib
import io
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlsplit
from xml.etree import ElementTree

from requests.structures import CaseInsensitiveDict

ERROR_TEMPLATE = (
    "<?xml version='1.0' encoding='utf-8' ?>"
    "<Error><Code>{code}</Code><Message>{message}</Message>"
    "<Resource>{resource}</Resource><RequestId>req-{seq}</RequestId>"
    "<TraceId>trace-{seq}</TraceId></Error>"
)

INITIATE_TEMPLATE = (
    '<InitiateMultipartUploadResult xmlns="http://www.qcloud.com/document/product/436/7751">'
    "<Bucket>examplebucket-1250000000</Bucket><Key>{key}</Key>"
    "<UploadId>{upload_id}</UploadId></InitiateMultipartUploadResult>"
)


class FakeRaw(io.BytesIO):
    """Stand-in for ``urllib3`` response bodies."""

    decode_content = False


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.raw = FakeRaw(content)
        self.closed = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def close(self) -> None:
        self.closed = True


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: CaseInsensitiveDict
    body: bytes
    timeout: Any = None
    stream: bool = False

    @property
    def path(self) -> str:
        return unquote(urlsplit(self.url).path)

    @property
    def query(self) -> dict[str, list[str]]:
        return parse_qs(urlsplit(self.url).query, keep_blank_values=True)

    @property
    def part_number(self) -> int | None:
        values = self.query.get("partNumber")
        return int(values[0]) if values else None

    @property
    def is_initiate(self) -> bool:
        return self.method == "POST" and "uploads" in self.query

    @property
    def is_complete(self) -> bool:
        return self.method == "POST" and "uploadId" in self.query

    @property
    def is_abort(self) -> bool:
        return self.method == "DELETE" and "uploadId" in self.query

    @property
    def is_part_upload(self) -> bool:
        return self.method == "PUT" and self.part_number is not None


@dataclass
class InjectedFailure:
    predicate: Callable[[RecordedRequest], bool]
    remaining: int
    status_code: int = 503
    error: BaseException | None = None


@dataclass
class FakeCosSession:
    """Thread-safe replacement for ``requests.Session`` in tests.

    Stores objects by path, tracks multipart sessions and verifies Content-MD5
    like the real service. Failures can be injected per request predicate.
    """

    part_delay: float = 0.0
    requests: list[RecordedRequest] = field(default_factory=list)
    objects: dict[str, bytes] = field(default_factory=dict)
    uploads: dict[str, dict[str, Any]] = field(default_factory=dict)
    events: list[tuple[str, int]] = field(default_factory=list)
    closed: bool = False
    max_parts_in_flight: int = 0
    _failures: list[InjectedFailure] = field(default_factory=list)
    _parts_in_flight: int = 0
    _upload_counter: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inject_failure(
        self,
        predicate: Callable[[RecordedRequest], bool],
        *,
        times: int = 1,
        status_code: int = 503,
        error: BaseException | None = None,
    ) -> None:
        self._failures.append(
            InjectedFailure(predicate, times, status_code=status_code, error=error)
        )

    def close(self) -> None:
        self.closed = True

    def requests_matching(
        self, predicate: Callable[[RecordedRequest], bool]
    ) -> list[RecordedRequest]:
        with self._lock:
            return [r for r in self.requests if predicate(r)]

    def send(self, prepared, timeout=None, stream=False, **kwargs):
        body = prepared.body
        if body is None:
            data = b""
        elif hasattr(body, "read"):
            data = body.read()
        elif isinstance(body, str):
            data = body.encode("utf-8")
        else:
            data = bytes(body)
        recorded = RecordedRequest(
            method=prepared.method,
            url=prepared.url,
            headers=CaseInsensitiveDict(prepared.headers),
            body=data,
            timeout=timeout,
            stream=stream,
        )
        with self._lock:
            self.requests.append(recorded)
            failure = self._take_failure(recorded)

        if recorded.is_part_upload:
            self._enter_part(recorded.part_number)
            try:
                if self.part_delay:
                    time.sleep(self.part_delay)
                if failure is not None:
                    return self._fail(failure, recorded)
                return self._handle(recorded)
            finally:
                self._leave_part(recorded.part_number)

        if failure is not None:
            return self._fail(failure, recorded)
        return self._handle(recorded)

    def _take_failure(self, recorded: RecordedRequest) -> InjectedFailure | None:
        for failure in self._failures:
            if failure.remaining > 0 and failure.predicate(recorded):
                failure.remaining -= 1
                return failure
        return None

    def _enter_part(self, part_number: int | None) -> None:
        with self._lock:
            self._parts_in_flight += 1
            self.max_parts_in_flight = max(
                self.max_parts_in_flight, self._parts_in_flight
            )
            self.events.append(("start", part_number or 0))

    def _leave_part(self, part_number: int | None) -> None:
        with self._lock:
            self._parts_in_flight -= 1
            self.events.append(("end", part_number or 0))

    def _fail(self, failure: InjectedFailure, recorded: RecordedRequest) -> FakeResponse:
        if failure.error is not None:
            raise failure.error
        return self._error(failure.status_code, "InternalError", "injected", recorded)

    def _error(
        self, status_code: int, code: str, message: str, recorded: RecordedRequest
    ) -> FakeResponse:
        body = ERROR_TEMPLATE.format(
            code=code, message=message, resource=recorded.path, seq=len(self.requests)
        )
        return FakeResponse(
            status_code, body.encode("utf-8"), {"Content-Type": "application/xml"}
        )

    def _handle(self, recorded: RecordedRequest) -> FakeResponse:
        expected_md5 = recorded.headers.get("Content-MD5")
        if expected_md5 is not None:
            actual_md5 = base64.b64encode(hashlib.md5(recorded.body).digest()).decode()
            if actual_md5 != expected_md5:
                return self._error(400, "BadDigest", "Content-MD5 mismatch", recorded)

        path = recorded.path
        query = recorded.query
        with self._lock:
            if recorded.method == "HEAD":
                if path in self.objects:
                    return FakeResponse(
                        200, headers={"Content-Length": str(len(self.objects[path]))}
                    )
                return FakeResponse(404)

            if recorded.method == "GET":
                if path in self.objects:
                    return FakeResponse(200, self.objects[path])
                return self._error(404, "NoSuchKey", "missing", recorded)

            if recorded.is_initiate:
                self._upload_counter += 1
                upload_id = f"upload-{self._upload_counter}"
                self.uploads[upload_id] = {"path": path, "parts": {}}
                body = INITIATE_TEMPLATE.format(key=path.lstrip("/"), upload_id=upload_id)
                return FakeResponse(200, body.encode("utf-8"))

            upload_id = query.get("uploadId", [None])[0]
            if upload_id is not None and upload_id not in self.uploads:
                return self._error(404, "NoSuchUpload", upload_id, recorded)

            if recorded.is_part_upload:
                etag = '"%s"' % hashlib.md5(recorded.body).hexdigest()
                self.uploads[upload_id]["parts"][recorded.part_number] = (
                    etag,
                    recorded.body,
                )
                return FakeResponse(200, headers={"ETag": etag})

            if recorded.is_complete:
                stored = self.uploads[upload_id]["parts"]
                root = ElementTree.fromstring(recorded.body)
                chunks = []
                for part in root.findall("Part"):
                    number = int(part.findtext("PartNumber"))
                    etag = part.findtext("ETag")
                    if number not in stored or stored[number][0] != etag:
                        return self._error(400, "InvalidPart", str(number), recorded)
                    chunks.append(stored[number][1])
                self.objects[path] = b"".join(chunks)
                del self.uploads[upload_id]
                return FakeResponse(200, b"<CompleteMultipartUploadResult/>")

            if recorded.is_abort:
                del self.uploads[upload_id]
                return FakeResponse(204)

            if recorded.method == "PUT":
                self.objects[path] = recorded.body
                return FakeResponse(
                    200, headers={"ETag": '"%s"' % hashlib.md5(recorded.body).hexdigest()}
                )

            if recorded.method == "DELETE":
                self.objects.pop(path, None)
                return FakeResponse(204)

        return self._error(405, "MethodNotAllowed", recorded.method, recorded)
