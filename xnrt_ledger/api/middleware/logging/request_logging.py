import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from xnrt_ledger.core.logger.logger import get_logger

logger = get_logger("xnrt_ledger.request")

# Polled constantly by load balancers
QUIET_PATHS = {"/api/v1/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation id echoed back as X-Request-ID"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.perf_counter()
        correlation_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = correlation_id

        log_context = {
            "request_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None
        }

        try:
            response = await call_next(request)
        except Exception as e:
            log_context.update({
                "error": str(e),
                "error_type": e.__class__.__name__,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2)
            })
            logger.error("Request failed", extra=log_context, exc_info=True)
            raise

        log_context.update({
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - start_time) * 1000, 2)
        })
        response.headers["X-Request-ID"] = correlation_id

        if request.url.path in QUIET_PATHS:
            logger.debug("Request completed", extra=log_context)
        elif response.status_code >= 500:
            logger.error("Request completed", extra=log_context)
        else:
            logger.info("Request completed", extra=log_context)
        return response
