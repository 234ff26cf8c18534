"""
ASGI middleware for tracking HTTP request metrics.
Records request count, duration, and errors per normalized route.
"""
import re
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from filedrop.utils.metrics import http_requests_total, http_request_duration_seconds, errors_total

_UUID_RE = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
    re.IGNORECASE
)
_NUMERIC_RE = re.compile(r'/\d+(?=/|$)')

# Not worth a time series
_SKIP_PATHS = frozenset({"/metrics", "/api/health"})


def normalize_path(path: str) -> str:
    """
    Normalize a path to keep label cardinality bounded.
    Upload, webhook, delivery and key IDs are UUIDs.
    """
    path = _UUID_RE.sub('{id}', path)
    return _NUMERIC_RE.sub('/{id}', path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        start_time = time.time()
        method = request.method
        path = normalize_path(request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            errors_total.labels(error_type="exception").inc()
            raise

        status_code = response.status_code
        http_requests_total.labels(method=method, path=path, status=status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(time.time() - start_time)

        # 4xx and 5xx
        if status_code >= 400:
            errors_total.labels(error_type=f"{status_code // 100}xx").inc()

        return response
