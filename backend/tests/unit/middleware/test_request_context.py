"""
Request Context Middleware Tests.

WHAT: Unit tests for the RequestContextMiddleware.

WHY: Billing requests fan out into invoice, gateway and email log lines.
The request ID ties them together, so these tests ensure:
- Client IP extraction (direct and through proxies)
- Request ID generation and propagation
- Context availability throughout the request lifecycle

HOW: Tests use hand-built ASGI scopes to drive the middleware directly.
"""

import pytest
from unittest.mock import MagicMock
from starlette.requests import Request
from starlette.responses import Response

from billing_engine.middleware.request_context import (
    REQUEST_ID_HEADER,
    RequestContext,
    RequestContextMiddleware,
    _request_context,
    get_client_ip,
    get_request_context,
)


def make_request(headers: dict = None, client_host: str = None, method: str = "GET", path: str = "/test") -> Request:
    """
    Create a request with specified headers and client.

    Args:
        headers: Dictionary of headers
        client_host: Client IP address
        method: HTTP method
        path: Request path

    Returns:
        Request object
    """
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


class TestGetClientIp:
    """Tests for the get_client_ip function."""

    def test_get_client_ip_from_x_real_ip(self):
        """
        Test IP extraction from X-Real-IP header.

        WHY: Nginx and similar proxies set X-Real-IP to the original
        client IP. This should take priority.
        """
        request = make_request(
            headers={"X-Real-IP": "192.168.1.100"},
            client_host="10.0.0.1",
        )
        assert get_client_ip(request) == "192.168.1.100"

    def test_get_client_ip_from_x_forwarded_for(self):
        """
        Test IP extraction from X-Forwarded-For header.

        WHY: The first IP in the chain is the original client.
        """
        request = make_request(
            headers={"X-Forwarded-For": "203.0.113.50, 70.41.3.18, 150.172.238.178"},
            client_host="10.0.0.1",
        )
        assert get_client_ip(request) == "203.0.113.50"

    def test_get_client_ip_from_direct_connection(self):
        request = make_request(client_host="192.168.1.50")
        assert get_client_ip(request) == "192.168.1.50"

    def test_get_client_ip_unknown_fallback(self):
        """
        Test IP extraction returns 'unknown' when no IP available.

        WHY: Missing client info should return a safe default rather
        than crashing.
        """
        request = make_request()
        assert get_client_ip(request) == "unknown"

    def test_get_client_ip_strips_whitespace(self):
        request = make_request(headers={"X-Real-IP": "  192.168.1.100  "})
        assert get_client_ip(request) == "192.168.1.100"


class TestGetRequestContext:
    """Tests for the get_request_context function."""

    def test_returns_none_outside_request(self):
        """
        Test that context is None outside of a request.

        WHY: Batch jobs run without a request and must still log.
        """
        _request_context.set(None)
        assert get_request_context() is None

    def test_returns_set_context(self):
        ctx = RequestContext(request_id="test-id", ip_address="1.2.3.4", path="/test", method="GET")

        token = _request_context.set(ctx)
        try:
            assert get_request_context() == ctx
        finally:
            _request_context.reset(token)


@pytest.mark.asyncio
class TestRequestContextMiddleware:
    """Tests for the RequestContextMiddleware class."""

    async def test_middleware_generates_request_id(self):
        """
        Test that middleware adds X-Request-ID to response.

        WHY: Request ID in response helps clients correlate
        requests with server-side logs.
        """
        async def mock_call_next(req):
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        response = await middleware.dispatch(make_request(), mock_call_next)

        # UUID4 format (36 chars with hyphens)
        assert len(response.headers[REQUEST_ID_HEADER]) == 36

    async def test_middleware_honours_incoming_request_id(self):
        async def mock_call_next(req):
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        response = await middleware.dispatch(
            make_request(headers={"X-Request-ID": "lb-1234"}), mock_call_next
        )

        assert response.headers[REQUEST_ID_HEADER] == "lb-1234"

    async def test_middleware_sets_context(self):
        """
        Test that the context is set in request.state and the ContextVar.

        WHY: Handlers read request.state; services read the ContextVar.
        """
        captured = {}

        async def mock_call_next(req):
            captured["state"] = req.state.context
            captured["var"] = get_request_context()
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        await middleware.dispatch(
            make_request(headers={"X-Real-IP": "192.168.1.100"}, method="POST", path="/api/invoices"),
            mock_call_next,
        )

        assert captured["state"] is captured["var"]
        assert captured["state"].ip_address == "192.168.1.100"
        assert captured["state"].path == "/api/invoices"
        assert captured["state"].method == "POST"

    async def test_middleware_clears_context_on_error(self):
        """
        Test that context is cleared even when handler raises.

        WHY: Context must not leak between requests.
        """
        async def mock_call_next(req):
            raise RuntimeError("handler failed")

        middleware = RequestContextMiddleware(app=MagicMock())
        with pytest.raises(RuntimeError):
            await middleware.dispatch(make_request(), mock_call_next)

        assert get_request_context() is None
