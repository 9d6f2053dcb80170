from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contentsync.apps.api.response import error_response
from contentsync.core.errors import (
    ContentSyncError,
    DatabaseError,
    InvalidSubscriptionError,
    JobRunStateError,
    ThresholdConfigError,
    TransportConfigError,
    UnknownTargetTableError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors mapped to (status, code); first match in MRO order wins.
_DOMAIN_ERRORS: dict[type[ContentSyncError], tuple[int, str]] = {
    InvalidSubscriptionError: (status.HTTP_400_BAD_REQUEST, "INVALID_SUBSCRIPTION"),
    UnknownTargetTableError: (status.HTTP_400_BAD_REQUEST, "UNKNOWN_TARGET_TABLE"),
    JobRunStateError: (status.HTTP_409_CONFLICT, "JOB_STATE_CONFLICT"),
    ThresholdConfigError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "THRESHOLD_NOT_CONFIGURED"),
    TransportConfigError: (status.HTTP_503_SERVICE_UNAVAILABLE, "REALTIME_UNAVAILABLE"),
    DatabaseError: (status.HTTP_503_SERVICE_UNAVAILABLE, "DB_UNAVAILABLE"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be {"code", "message", ...} or a plain string.
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


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=422)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # pydantic may put exception objects in ctx; keep only JSON-friendly fields.
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": str(error.get("type", ""))}
        for error in exc.errors()
    ]


async def content_sync_error_handler(request: Request, exc: ContentSyncError) -> JSONResponse:
    status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"
    for klass in type(exc).__mro__:
        if klass in _DOMAIN_ERRORS:
            status_code, code = _DOMAIN_ERRORS[klass]
            break
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def job_not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "JOB_NOT_FOUND", "message": f"Job run {job_id} not found"},
    )
