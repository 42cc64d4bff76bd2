from __future__ import annotations

from typing import Any

from tenantshift.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", "VALIDATION_ERROR", "Tenant already runs on shared_cluster"),
    401: _error_response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _error_response("Not found", "UNKNOWN_TENANT", "Unknown tenant: t_123"),
    409: _error_response("Conflict", "MIGRATION_IN_PROGRESS", "A migration is already in progress for tenant t_123"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
