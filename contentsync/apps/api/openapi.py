from __future__ import annotations

from typing import Any

from contentsync.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", "INVALID_SUBSCRIPTION", "Unsupported realtime entity: invoices"),
    401: _error_response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _error_response("Not found", "JOB_NOT_FOUND", "Job run 3f2a not found"),
    409: _error_response("Conflict", "JOB_STATE_CONFLICT", "Job run 3f2a is already success"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    429: _error_response(
        "Too many concurrent runs",
        "JOB_CONCURRENCY_LIMIT",
        "Too many running content_diff_posts runs",
        details={"running_count": 5, "limit": 5},
    ),
    500: _error_response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_response("Service unavailable", "DB_UNAVAILABLE", "Database unavailable"),
}
