"""Request logging and correlation for the trust ledger API.

Every request gets a request id: the caller's X-Request-Id when it is a short
token (the payment pipeline passes its own so both sides log the same id),
otherwise a fresh `req_<12 hex>`. The id is set on request.state for the
response envelope and echoed back in the X-Request-Id header.

Log format (WARNING for 5xx):
    INFO [POST] /api/v1/trust/buyer-payments → 200 (23ms) company=c1 user=u1 req_a1b2c3d4e5f6
"""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.tl_common.response import REQUEST_ID_HEADER, new_request_id

logger = logging.getLogger("tl.request")

_CALLER_REQUEST_ID = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def resolve_request_id(incoming: str | None) -> str:
    if incoming and _CALLER_REQUEST_ID.match(incoming):
        return incoming
    return new_request_id()


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "[%s] %s → %d (%.0fms) company=%s user=%s %s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.headers.get("x-company-id", "-"),
            request.headers.get("x-user-id", "-"),
            request_id,
        )
        return response
