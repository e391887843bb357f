"""Response envelope of the trust ledger API.

Every endpoint answers with the same envelope, on success and on AppError:
{
    "code": 0,            // 0=success, else the AppError code
                          // (1xxx input, 2xxx ledger, 4xxx jobs, 9xxx system)
    "message": "success",
    "data": { ... },      // null on error; amounts inside are integer cents
    "timestamp": "...",   // UTC, ISO-8601
    "request_id": "..."   // same value as the X-Request-Id response header
}
"""

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.tl_common.datetime_utils import utc_now
from src.tl_common.errors import AppError

REQUEST_ID_HEADER = "X-Request-Id"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def request_id_of(request: Request) -> str:
    """The id RequestLogMiddleware put on the request, or a fresh one outside it."""
    return getattr(request.state, "request_id", None) or new_request_id()


class ApiResponse(BaseModel):
    code: int = 0
    message: str = "success"
    data: Any = None
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())
    request_id: str = Field(default_factory=new_request_id)


def success_response(data: Any = None, request_id: str | None = None) -> ApiResponse:
    resp = ApiResponse(code=0, message="success", data=data)
    if request_id:
        resp.request_id = request_id
    return resp


def error_response(code: int, message: str, request_id: str | None = None) -> ApiResponse:
    resp = ApiResponse(code=code, message=message, data=None)
    if request_id:
        resp.request_id = request_id
    return resp


def respond(request: Request, data: Any = None) -> ApiResponse:
    return success_response(data, request_id_of(request))


def app_error_response(request: Request, exc: AppError) -> JSONResponse:
    body = error_response(exc.code, exc.message, request_id_of(request))
    return JSONResponse(
        status_code=exc.http_status,
        content=body.model_dump(),
        headers={REQUEST_ID_HEADER: body.request_id},
    )
