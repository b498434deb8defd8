"""Error envelope for the devstore.

Every failure leaves as `ErrorResponse` ({error, message, request_id, details}),
with the status codes `clipfeed.errors.classify_status` reads on the client:

- 400 for malformed requests, including body validation (FastAPI would send 422)
- 401 / 403 for a missing identity or a row owned by someone else
- 409 when a write hits a unique constraint
- 413 for oversized media objects
"""

from __future__ import annotations

import logging
from typing import Any, cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from clipfeed.devstore.schemas import ErrorResponse


logger = logging.getLogger(__name__)


_ERROR_CODES: dict[int, str] = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    413: "payload_too_large",
}


def error_response(
    request: Request,
    status_code: int,
    message: str,
    *,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorResponse(
        error=_ERROR_CODES.get(status_code, f"http_{status_code}"),
        message=message,
        request_id=getattr(request.state, "request_id", None),
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, exclude_none=True),
        headers=headers,
    )


async def _on_http_error(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)
    return error_response(
        request,
        http_exc.status_code,
        str(http_exc.detail),
        headers=getattr(http_exc, "headers", None),
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for err in exc.errors():
        # loc starts with "body" / "query"; the rest names the field.
        loc = [str(p) for p in err.get("loc", ())]
        out.append({"field": ".".join(loc[1:]) or ".".join(loc), "message": str(err.get("msg", ""))})
    return out


async def _on_request_validation(request: Request, exc: Exception) -> JSONResponse:
    return error_response(
        request,
        400,
        "invalid request body",
        details=_field_errors(cast(RequestValidationError, exc)),
    )


async def _on_integrity_error(request: Request, exc: Exception) -> JSONResponse:
    reason = str(getattr(exc, "orig", None) or exc)
    logger.info(
        "write rejected by constraint path=%s request_id=%s reason=%s",
        request.url.path,
        getattr(request.state, "request_id", None),
        reason,
    )
    if "UNIQUE" in reason.upper():
        message = "duplicate key value violates unique constraint"
    else:
        message = "row violates a table constraint"
    return error_response(request, 409, message, details={"constraint": reason})


async def _on_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        getattr(request.state, "request_id", None),
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return error_response(request, 500, "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _on_http_error)
    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(IntegrityError, _on_integrity_error)
    app.add_exception_handler(Exception, _on_unexpected)
