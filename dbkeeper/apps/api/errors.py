from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dbkeeper.apps.api.response import error_response, is_versioned_request
from dbkeeper.core.errors import RecordAlreadyExistsError, RecordConflictError, RecordNotFoundError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), detail, None
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), "Request failed", None


def _json_error(request: Request, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _json_error(request, exc.status_code, code, message, details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    return _json_error(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": exc.errors()},
    )


async def record_not_found_handler(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return _json_error(request, 404, "NOT_FOUND", str(exc))


async def record_exists_handler(request: Request, exc: RecordAlreadyExistsError) -> JSONResponse:
    return _json_error(request, 409, "ALREADY_EXISTS", str(exc))


async def record_conflict_handler(request: Request, exc: RecordConflictError) -> JSONResponse:
    return _json_error(request, 409, "CONFLICT", str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled api error path=%s", request.url.path, exc_info=exc)
    return _json_error(request, 500, "INTERNAL_ERROR", "Internal server error")
