from __future__ import annotations

from typing import Any

from crmguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {
        "model": ErrorEnvelope,
        "description": "Bad request",
        "content": {"application/json": {"example": _error_example(code="BAD_REQUEST", message="Bad request")}},
    },
    404: {
        "model": ErrorEnvelope,
        "description": "Not found",
        "content": {"application/json": {"example": _error_example(code="NOT_FOUND", message="Backup not found")}},
    },
    409: {
        "model": ErrorEnvelope,
        "description": "Conflict with the current job or artifact state",
        "content": {
            "application/json": {
                "example": _error_example(code="BACKUP_STATE_CONFLICT", message="Backup 7 is not completed"),
            }
        },
    },
    422: {
        "model": ErrorEnvelope,
        "description": "Validation error",
        "content": {
            "application/json": {
                "example": _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
            }
        },
    },
    500: {
        "model": ErrorEnvelope,
        "description": "Internal error",
        "content": {
            "application/json": {"example": _error_example(code="INTERNAL_ERROR", message="Internal server error")}
        },
    },
}
