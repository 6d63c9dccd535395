"""One structured log line per HTTP request."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.stdlib.get_logger("relayhub.http")

REQUEST_ID_HEADER = "x-request-id"

# Probed by orchestrators every few seconds.
_QUIET_PATHS = frozenset({"/health", "/healthz"})


def _level_for(status: int, path: str) -> str:
    if status >= 500:
        return "error"
    if status >= 400:
        return "warning"
    return "debug" if path in _QUIET_PATHS else "info"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds ``request_id`` for the request's lifetime.

    Relayer calls made while serving the request (a batch submission, a
    compensation) log with the same id, and the id is echoed back in the
    response header.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            path = request.url.path
            getattr(logger, _level_for(status, path))(
                "http_request",
                method=request.method,
                path=path,
                status=status,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                client=request.client.host if request.client else None,
            )
