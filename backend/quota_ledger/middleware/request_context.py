"""
Request correlation middleware.

WHAT: Assigns every request an id, exposes it to log records, and logs one
line per request with its status and duration.

WHY: A single ledger operation can log from the route, the allocation
engine and the mail host client. The request id ties those lines together,
and echoing it in ``X-Request-ID`` lets a support ticket point at them.

HOW: The id is taken from an incoming ``X-Request-ID`` header when it looks
sane, otherwise generated. It lives in a ContextVar for the duration of the
request; ``RequestIdLogFilter`` copies it onto every LogRecord.
"""

import logging
import re
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


REQUEST_ID_HEADER = "X-Request-ID"

# Accept caller-supplied ids only if they cannot break a log line
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    method: str
    path: str
    client_ip: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """Context of the request being served, or None outside a request."""
    return _request_context.get()


def get_request_id() -> Optional[str]:
    context = _request_context.get()
    return context.request_id if context else None


def resolve_request_id(header_value: Optional[str]) -> str:
    """
    Reuse the caller's request id if well-formed, else mint a new one.
    """
    if header_value and _REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid.uuid4().hex


def get_client_ip(request: Request) -> str:
    """
    First hop of X-Forwarded-For, falling back to the socket peer.

    Only meaningful behind a proxy that overwrites the header.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RequestIdLogFilter(logging.Filter):
    """
    Adds ``request_id`` to every log record ("-" outside a request).

    Install on a handler so format strings can use ``%(request_id)s``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a RequestContext for the request and logs its outcome.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = RequestContext(
            request_id=resolve_request_id(request.headers.get(REQUEST_ID_HEADER)),
            method=request.method,
            path=request.url.path,
            client_ip=get_client_ip(request),
        )
        request.state.context = context
        token = _request_context.set(context)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = context.request_id
            logger.info(
                f"{context.method} {context.path} -> {response.status_code}",
                extra={
                    "request_id": context.request_id,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "client_ip": context.client_ip,
                },
            )
            return response
        finally:
            _request_context.reset(token)
