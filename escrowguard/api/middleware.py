import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from escrowguard.common.logging import get_logger

logger = get_logger("middleware")


class AuditMiddleware(BaseHTTPMiddleware):
    """Logs every request with its status and duration."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "%s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )

        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        return response
