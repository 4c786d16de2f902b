"""
api/responses.py -- The structured-response emitter handed to the Guard.

Guard.protect() calls responder(status, body) whenever a check denies or an
operation fails. This turns that pair into the same JSON envelope the
exception handlers in api/main.py produce, so clients parse one error shape
no matter which layer rejected them.

Auth failures are never cacheable (Cache-Control: no-store). A 429 body that
carries retry_after is mirrored into a Retry-After header.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse


def json_responder(status: int, body: dict) -> JSONResponse:
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        content = ErrorResponse(error=ErrorDetail(**error)).model_dump(exclude_none=True)
    else:
        content = body
    response = JSONResponse(status_code=status, content=content)
    response.headers["Cache-Control"] = "no-store"
    if isinstance(error, dict) and error.get("retry_after") is not None:
        response.headers["Retry-After"] = str(error["retry_after"])
    return response
