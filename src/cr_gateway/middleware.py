"""Access log for the credit API, correlated with ledger log lines.

Each request gets an id: the caller's X-Request-ID when it sent a usable one,
otherwise a fresh `req_<hex>`. The id lands on request.state (the AppError
envelope reads it there) and goes back in the X-Request-ID response header.

The line carries the same best-effort IP and country the bonus gates see, so a
withheld bonus on `cr.bonus` can be matched to the login that asked for it:
    [POST] /session 200 12ms ip=203.0.113.7 country=DE req_a1b2c3d4e5f6
Server errors log at WARNING.
"""

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.cr_gateway.request_context import get_client_ip, get_country

logger = logging.getLogger("cr.request")

REQUEST_ID_HEADER = "x-request-id"

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if _SAFE_REQUEST_ID.match(incoming):
        return incoming
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id

        started = time.perf_counter()
        response: Response = await call_next(request)
        took_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "[%s] %s %d %.0fms ip=%s country=%s %s",
            request.method,
            request.url.path,
            response.status_code,
            took_ms,
            get_client_ip(request) or "-",
            get_country(request) or "-",
            request_id,
        )
        return response
