"""
Request context middleware for log correlation.

WHAT: Middleware that assigns every request an ID and makes it available
throughout the request lifecycle.

WHY: One billing request can fan out into invoice, gateway and email
log lines. A shared request ID ties them together:
- Incoming X-Request-ID is honoured so IDs survive the load balancer
- Otherwise a new UUID4 is generated
- The ID is echoed back in the response header

HOW: Stores the context in request.state for handlers and in a ContextVar
for services, which read it with get_request_context().
"""

import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class RequestContext:
    """
    Request-scoped context data.

    Fields:
    - request_id: Unique identifier for the request (for log correlation)
    - ip_address: Client's real IP (considering proxies)
    - path: Request path
    - method: HTTP method
    """

    request_id: str
    ip_address: str
    path: str
    method: str


# WHY: ContextVar gives each async request its own isolated context
_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """
    Get the current request context.

    Returns:
        RequestContext if within a request, None otherwise (batch jobs)
    """
    return _request_context.get()


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP address from a request.

    HOW: Checks headers in order of trust:
    1. X-Real-IP (set by some proxies like nginx)
    2. X-Forwarded-For (comma-separated list, first is original client)
    3. request.client.host (direct connection IP)

    Security Note:
        These headers can be spoofed by clients if not behind a trusted proxy.
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()

    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    Example:
        @app.get("/api/example")
        async def example(request: Request):
            ctx = request.state.context
            logger.info("Handling", extra={"request_id": ctx.request_id})
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        context = RequestContext(
            request_id=request_id,
            ip_address=get_client_ip(request),
            path=request.url.path,
            method=request.method,
        )
        request.state.context = context
        token = _request_context.set(context)

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            logger.info(
                f"{request.method} {request.url.path} {response.status_code}",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return response

        finally:
            # Reset so the context never leaks into the next request
            _request_context.reset(token)
