"""
Middleware package.

WHY: Request correlation applies to every route, so it lives outside the
routers.
"""

from quota_ledger.middleware.request_context import (
    REQUEST_ID_HEADER,
    RequestContext,
    RequestContextMiddleware,
    RequestIdLogFilter,
    get_request_context,
    get_request_id,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestContext",
    "RequestContextMiddleware",
    "RequestIdLogFilter",
    "get_request_context",
    "get_request_id",
]
