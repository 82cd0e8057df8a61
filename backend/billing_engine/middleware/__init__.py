"""
Middleware package.

WHY: Middleware provides cross-cutting concerns, such as request ID
assignment for log correlation, that apply to all requests.
"""

from billing_engine.middleware.request_context import (
    RequestContextMiddleware,
    RequestContext,
    get_request_context,
    get_client_ip,
)

__all__ = [
    "RequestContextMiddleware",
    "RequestContext",
    "get_request_context",
    "get_client_ip",
]
