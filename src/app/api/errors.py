"""Request validation and upstream error mapping.

Field validators that reject a value (blank names, unknown enum values from
custom checks) answer 400 with the validator's message as ``detail``; every
other validation failure keeps FastAPI's default 422 body.

Hosted function failures that happen before any response bytes are sent
become HTTPExceptions through upstream_http_error(): a 4xx from the
function keeps its status, anything else (5xx, connect errors, timeouts)
answers 502.
"""

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.app.services.functions import FunctionError

_VALUE_ERROR_PREFIX = "Value error, "


def upstream_http_error(exc: Exception, default_detail: str) -> HTTPException:
    """Map a FunctionError or httpx.HTTPError to the HTTPException to raise."""
    if isinstance(exc, FunctionError):
        if exc.status_code and 400 <= exc.status_code < 500:
            return HTTPException(status_code=exc.status_code, detail=str(exc))
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc) or default_detail)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=default_detail)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    for error in exc.errors():
        if error.get("type") == "value_error":
            message = str(error.get("msg", ""))
            if message.startswith(_VALUE_ERROR_PREFIX):
                message = message[len(_VALUE_ERROR_PREFIX):]
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": message},
            )
    return await request_validation_exception_handler(request, exc)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_error_handler)
