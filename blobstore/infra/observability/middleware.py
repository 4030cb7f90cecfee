import json
import logging
import re
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.concurrency import iterate_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from blobstore.common.config import get_settings
from blobstore.infra.observability.metrics import LATENCY, REQUESTS

TRACE_BODY_LIMIT = 2048

SENSITIVE_KEYS = {
    "password",
    "secret",
    "secret_key",
    "secret_id",
    "token",
    "sign",
    "q-signature",
    "api_key",
    "x-api-key",
    "x-admin-key",
    "authorization",
}

SENSITIVE_TEXT_PATTERNS = [
    re.compile(
        r"(?i)(token|secret|api_key|x-api-key|x-admin-key|password|authorization|q-signature|sign)\s*[:=]\s*[^\s&]+"
    ),
]


def mask_mapping(obj: Any) -> Any:
    if isinstance(obj, dict):
        masked: dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                masked[k] = "***"
            else:
                masked[k] = mask_mapping(v)
        return masked
    if isinstance(obj, list):
        return [mask_mapping(x) for x in obj]
    return obj


def mask_text(text: str) -> str:
    # token=xxxx、Authorization: xxxx、q-signature=xxxx 之类的片段统一替换
    masked = text
    for pattern in SENSITIVE_TEXT_PATTERNS:
        masked = pattern.sub(
            lambda m: re.split(r"[:=]", m.group(0), maxsplit=1)[0] + ": ***",
            masked,
        )
    return masked


def describe_body(raw_body: bytes) -> str | None:
    if not raw_body:
        return None
    decoded_body = raw_body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(decoded_body)
    except ValueError:
        masked_text = mask_text(decoded_body)
    else:
        masked_text = json.dumps(mask_mapping(parsed), ensure_ascii=False)
    if len(masked_text) > TRACE_BODY_LIMIT:
        masked_text = masked_text[:TRACE_BODY_LIMIT] + "...<truncated>"
    return masked_text


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        client_ip = _client_ip(request)
        logger = logging.getLogger("http")

        trace_http = get_settings().TRACE_HTTP
        request_body: str | None = None
        if trace_http:
            raw_body = await request.body()
            request_body = describe_body(raw_body)

            async def receive():
                return {
                    "type": "http.request",
                    "body": raw_body,
                    "more_body": False,
                }

            request._receive = receive

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            logger.exception(
                "request_error method=%s route=%s status=%s duration_ms=%.3f "
                "request_id=%s client_ip=%s",
                request.method,
                request.url.path,
                500,
                round(elapsed * 1000, 3),
                request_id,
                client_ip or "-",
                extra={
                    "extra": {
                        "method": request.method,
                        "route": request.url.path,
                        "status": 500,
                        "duration_ms": round(elapsed * 1000, 3),
                        "request_id": request_id,
                        "client_ip": client_ip,
                        "exception": repr(exc),
                    }
                },
            )
            raise

        elapsed = time.perf_counter() - start
        status_code = response.status_code

        route_template = request.scope.get("route", None)
        if route_template and hasattr(route_template, "path"):
            route = route_template.path
        else:
            route = request.url.path

        REQUESTS.labels(request.method, route, str(status_code)).inc()
        LATENCY.labels(request.method, route).observe(elapsed)

        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        level = logging.INFO
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING

        duration_ms = round(elapsed * 1000, 3)
        extra_payload: dict[str, Any] = {
            "method": request.method,
            "route": route,
            "query": mask_text(request.url.query) if request.url.query else None,
            "status": status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
            "client_ip": client_ip,
            "user_agent": request.headers.get("User-Agent"),
        }
        if trace_http:
            # 二进制 blob 响应不做追踪，避免把镜像层内容写进日志
            response_body: str | None = None
            content_type = response.headers.get("content-type", "")
            if "json" in content_type:
                response_body_bytes = b""
                async for chunk in response.body_iterator:
                    response_body_bytes += chunk
                response.body_iterator = iterate_in_threadpool(
                    iter([response_body_bytes])
                )
                response_body = describe_body(response_body_bytes)
            extra_payload["request_body"] = request_body
            extra_payload["response_body"] = response_body

        logger.log(
            level,
            "request method=%s route=%s status=%s duration_ms=%.3f "
            "request_id=%s client_ip=%s",
            request.method,
            route,
            status_code,
            duration_ms,
            request_id,
            client_ip or "-",
            extra={"extra": extra_payload},
        )
        return response
