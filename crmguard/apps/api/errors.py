from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmguard.apps.api.response import error_response
from crmguard.core.errors import (
    ArtifactMissingError,
    BackupStateError,
    ChecksumMismatchError,
    CleanupRuleError,
    CrmGuardError,
    InvalidBackupConfigError,
    InvalidPointInTimeError,
    MissingRecordError,
    UnsupportedDriverError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors that callers can act on, mapped to (status, code).
_DOMAIN_ERRORS: tuple[tuple[type[CrmGuardError], int, str], ...] = (
    (InvalidBackupConfigError, 422, "INVALID_BACKUP_CONFIG"),
    (InvalidPointInTimeError, 422, "INVALID_POINT_IN_TIME"),
    (CleanupRuleError, 422, "INVALID_CLEANUP_RULE"),
    (MissingRecordError, 404, "RECORD_NOT_FOUND"),
    (ArtifactMissingError, 409, "ARTIFACT_MISSING"),
    (ChecksumMismatchError, 409, "CHECKSUM_MISMATCH"),
    (BackupStateError, 409, "BACKUP_STATE_CONFLICT"),
    (UnsupportedDriverError, 503, "UNSUPPORTED_DRIVER"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: CrmGuardError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_cls, mapped_status, mapped_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_cls):
            status_code, code = mapped_status, mapped_code
            break
    if status_code >= 500:
        logger.error("api_domain_error path=%s error=%s", request.url.path, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    payload = error_response(request=request, code="BAD_REQUEST", message=str(exc) or "Bad request")
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients; the traceback goes to the log.
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
