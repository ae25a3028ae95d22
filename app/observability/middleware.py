import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.logging import client_ip, get_logger

logger = get_logger("http")


class RequestTimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.perf_counter()

        # attach to request state for handlers and the error payload
        request.state.request_id = rid

        response = await call_next(request)

        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info(
            "request completed",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "latency_ms": round(dur_ms, 2),
                "client_ip": client_ip(request),
            },
        )
        response.headers["x-request-id"] = rid

        # set by FixedWindowRateLimiter.check on limited routes
        rate = getattr(request.state, "rate_limit", None)
        if rate is not None:
            for name, value in rate.headers().items():
                response.headers[name] = value
        return response
