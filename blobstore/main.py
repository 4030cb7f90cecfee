import logging

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from blobstore.api.v1.deps import require_api_key
from blobstore.api.v1.routers.blobs import router as blobs_router
from blobstore.common.config import Settings, get_settings
from blobstore.common.logging import mask_secret, setup_logging
from blobstore.infra.observability.metrics import metrics_app
from blobstore.infra.observability.middleware import MetricsMiddleware
from blobstore.infra.storage.client import ConfigurationError
from blobstore.infra.storage.config import CosBackendConfig

ERROR_CODE_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    415: "unsupported_media_type",
    429: "too_many_requests",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
}


def _normalize_detail(detail):
    if isinstance(detail, dict):
        maybe_code = detail.get("error_code")
        cleaned = {k: v for k, v in detail.items() if k != "error_code"}
        if len(cleaned) == 1 and "message" in cleaned:
            cleaned = cleaned["message"]
        if not cleaned:
            cleaned = None
        return cleaned, maybe_code if isinstance(maybe_code, str) else None
    return detail, None


def _resolve_error_code(status_code: int, override: str | None = None) -> str:
    if override:
        return override
    if status_code == 422:
        return "validation_error"
    return ERROR_CODE_BY_STATUS.get(status_code, "unknown_error")


def _describe_storage_target(settings: Settings) -> str:
    parts: list[str] = [
        f"service={settings.COS_SERVICE_BASE_URL or '<missing>'}",
        f"secret_id={mask_secret(settings.COS_SECRET_ID)}",
    ]
    if settings.COS_ACCELERATED_UPLOAD_BASE_URL:
        parts.append(f"accelerated={settings.COS_ACCELERATED_UPLOAD_BASE_URL}")
    if settings.cdn_enabled:
        parts.append(f"cdn={settings.CDN_BASE_URL}")
    parts.append(f"part_size={settings.STORAGE_PART_SIZE_BYTES}")
    parts.append(f"batch_size={settings.STORAGE_UPLOAD_BATCH_SIZE}")
    return ", ".join(parts)


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging()
    app = FastAPI(
        title="Blobstore Service",
        version="v1.0",
        description="Content-addressable blob storage on the object store",
    )
    app.state.blob_storage = None

    # Optional CORS
    if settings.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Routers
    app.include_router(
        blobs_router,
        prefix="/api/v1",
        tags=["blobs"],
        dependencies=[Depends(require_api_key)],
    )

    # Metrics
    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)
        app.mount("/metrics", metrics_app)

    @app.on_event("startup")
    def on_startup() -> None:
        startup_logger = logging.getLogger("blobstore.startup")
        target_text = _describe_storage_target(settings)
        try:
            CosBackendConfig.from_settings(settings)
        except ConfigurationError as exc:
            startup_logger.warning(
                "对象存储配置不完整，blob 接口将返回 503，请检查 COS_SECRET_ID、COS_SECRET_KEY 与 COS_SERVICE_BASE_URL。"
                " [event=storage_config_incomplete] (%s，error=%s)",
                target_text,
                exc,
            )
            return
        startup_logger.info(
            "对象存储配置检查通过，应用继续启动。"
            " [event=storage_config_ready] (%s)",
            target_text,
        )

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        storage = getattr(app.state, "blob_storage", None)
        if storage is not None:
            storage.close()
            app.state.blob_storage = None
            logging.getLogger("blobstore.startup").info(
                "对象存储连接已关闭。 [event=storage_closed]"
            )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger = logging.getLogger("http")
        normalized_detail, code_override = _normalize_detail(exc.detail)
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "http_exception status=%s detail=%s method=%s path=%s request_id=%s",
            exc.status_code,
            normalized_detail,
            request.method,
            request.url.path,
            request.headers.get("X-Request-Id"),
            extra={
                "extra": {
                    "status": exc.status_code,
                    "detail": normalized_detail,
                    "method": request.method,
                    "route": request.url.path,
                    "request_id": request.headers.get("X-Request-Id"),
                }
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "HTTP Error",
                "status": exc.status_code,
                "detail": normalized_detail,
                "error_code": _resolve_error_code(exc.status_code, code_override),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(
            status_code=422,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "Validation Error",
                "status": 422,
                # 确保可序列化
                "detail": jsonable_encoder(exc.errors()),
                "error_code": _resolve_error_code(422),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        try:
            config = CosBackendConfig.from_settings(get_settings())
        except ConfigurationError as exc:
            return {"status": "not_ready", "detail": {"storage": str(exc)}}
        return {
            "status": "ready",
            "storage": {
                "service_base_url": config.service_base_url,
                "accelerated_upload": bool(config.accelerated_upload_base_url),
                "cdn": config.cdn_enabled,
            },
        }

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("blobstore.main:app", host="0.0.0.0", port=8000, reload=True)
