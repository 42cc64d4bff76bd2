from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantshift.apps.api.response import error_response
from tenantshift.core.errors import (
    CancellationNotAllowedError,
    JobNotFoundError,
    MigrationExclusivityError,
    ProviderConfigError,
    ProvisioningError,
    TenantShiftError,
    UnknownTenantError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first matching class decides the status code.
_ERROR_STATUS: tuple[tuple[type[TenantShiftError], int], ...] = (
    (UnknownTenantError, 404),
    (JobNotFoundError, 404),
    (MigrationExclusivityError, 409),
    (CancellationNotAllowedError, 409),
    (ValidationError, 400),
    (ProvisioningError, 502),
    (ProviderConfigError, 503),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def to_http_exception(exc: TenantShiftError) -> HTTPException:
    # Taxonomy errors keep their stable code; the class picks the status.
    status_code = next((status for cls, status in _ERROR_STATUS if isinstance(exc, cls)), 500)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def tenantshift_exception_handler(request: Request, exc: TenantShiftError) -> JSONResponse:
    return await http_exception_handler(request, to_http_exception(exc))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for CLI/SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
