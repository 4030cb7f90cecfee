from prometheus_client import Counter, Histogram, make_asgi_app

# 低基数标签：使用路由模板（如 /api/v1/blobs/{digest}），避免 digest 导致高基数
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)

LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "route"],
)

STORAGE_REQUESTS = Counter(
    "blob_storage_requests_total",
    "Requests sent to the object store",
    ["operation", "outcome"],
)

STORAGE_RETRIES = Counter(
    "blob_storage_retries_total",
    "Failed object store attempts that were retried",
    ["operation"],
)

MULTIPART_ABORTS = Counter(
    "blob_storage_multipart_aborts_total",
    "Multipart upload sessions aborted after a failure",
    ["outcome"],
)

UPLOADED_BYTES = Counter(
    "blob_storage_uploaded_bytes_total",
    "Blob bytes stored in the object store",
    ["mode"],
)

# /metrics 端点 ASGI 应用
metrics_app = make_asgi_app()
