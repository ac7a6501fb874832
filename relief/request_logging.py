import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware

from .core.logging_config import bind_log_context

logger = logging.getLogger("relief.http")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags every log line of a request with its id and echoes the id back."""

    async def dispatch(self, request, call_next):
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip()[:64] or uuid.uuid4().hex
        started = time.monotonic()
        status_code = 500
        with bind_log_context(request_id=request_id):
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            finally:
                level = logging.WARNING if status_code >= 500 else logging.INFO
                logger.log(
                    level,
                    "api_request method=%s path=%s status=%s duration_ms=%s admin=%s",
                    request.method.upper(),
                    request.url.path,
                    status_code,
                    int((time.monotonic() - started) * 1000),
                    request.url.path.startswith("/admin/"),
                )
