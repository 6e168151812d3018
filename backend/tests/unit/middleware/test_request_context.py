"""
Unit tests for request correlation.

WHY: Support tickets quote the X-Request-ID header; the id must be echoed,
must survive from a well-behaved proxy, and must never let a caller inject
arbitrary text into log lines.
"""

import logging

import pytest
from httpx import AsyncClient
from starlette.requests import Request

from quota_ledger.middleware import REQUEST_ID_HEADER, RequestIdLogFilter
from quota_ledger.middleware.request_context import get_client_ip, resolve_request_id


def _request(headers=None, client=("10.0.0.5", 4321)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/health",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestResolveRequestId:
    """Caller-supplied versus generated ids."""

    def test_reuses_well_formed_id(self):
        assert resolve_request_id("req-123_abc.1") == "req-123_abc.1"

    def test_replaces_missing_id(self):
        generated = resolve_request_id(None)

        assert len(generated) == 32

    def test_replaces_id_with_newline(self):
        assert resolve_request_id("abc\nforged log line") != "abc\nforged log line"

    def test_replaces_overlong_id(self):
        assert resolve_request_id("a" * 65) != "a" * 65


class TestClientIp:
    """Client address resolution."""

    def test_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

        assert get_client_ip(request) == "203.0.113.9"

    def test_socket_peer(self):
        assert get_client_ip(_request()) == "10.0.0.5"

    def test_unknown(self):
        assert get_client_ip(_request(client=None)) == "unknown"


class TestLogFilter:
    """Request id on log records."""

    def test_outside_request_uses_dash(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)

        assert RequestIdLogFilter().filter(record) is True
        assert record.request_id == "-"


@pytest.mark.asyncio
class TestMiddleware:
    """Header echo through the application."""

    async def test_echoes_supplied_id(self, client: AsyncClient):
        response = await client.get("/health", headers={REQUEST_ID_HEADER: "ticket-42"})

        assert response.status_code == 200
        assert response.headers[REQUEST_ID_HEADER] == "ticket-42"

    async def test_generates_id(self, client: AsyncClient):
        response = await client.get("/health")

        assert len(response.headers[REQUEST_ID_HEADER]) == 32
