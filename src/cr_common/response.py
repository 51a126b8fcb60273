"""Unified API error envelope.

Errors raised as AppError leave the service in this shape:
{
    "code": 2001,        // AppError code
    "message": "...",
    "data": null,
    "timestamp": "...",
    "request_id": "..."
}
"""

import uuid
from typing import Any

from pydantic import BaseModel, Field

from src.cr_common.datetime_utils import utc_now


class ApiResponse(BaseModel):
    code: int = 0
    message: str = "success"
    data: Any = None
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())
    request_id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")


def error_response(code: int, message: str, request_id: str | None = None) -> ApiResponse:
    if request_id:
        return ApiResponse(code=code, message=message, data=None, request_id=request_id)
    return ApiResponse(code=code, message=message, data=None)
