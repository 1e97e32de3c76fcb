"""Response envelopes shared by every endpoint: `{success, statusCode, timestamp, ...}`."""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bff.auth.errors import AuthError


class ErrorBody(BaseModel):
    message: str
    code: str
    stack: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    statusCode: int
    timestamp: str
    error: ErrorBody


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def ok(status_code: int = 200, **data: Any) -> Dict[str, Any]:
    return {"success": True, "statusCode": status_code, "timestamp": _timestamp(), **data}


def error_response(
    status_code: int,
    message: str,
    code: str,
    *,
    exc: Optional[BaseException] = None,
    include_stack: bool = False,
) -> JSONResponse:
    stack = None
    if include_stack and exc is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    body = ErrorResponse(
        statusCode=status_code,
        timestamp=_timestamp(),
        error=ErrorBody(message=message, code=code, stack=stack),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def auth_error_response(err: AuthError) -> JSONResponse:
    # `detail` stays in the logs.
    return error_response(err.status_code, err.message, err.code)
