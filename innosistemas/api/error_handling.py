from __future__ import annotations

from typing import Any, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from innosistemas.api.schemas import Envelope, ErrorBody
from innosistemas.logging import get_logger
from innosistemas.service.errors import (
    AUTH_FAILURE_MESSAGES,
    AuthenticationFailed,
    AuthFailureKind,
    ServiceError,
)
from innosistemas.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

STORAGE_UNAVAILABLE_MESSAGE = AUTH_FAILURE_MESSAGES[AuthFailureKind.STORAGE_UNAVAILABLE]


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the error envelope; ``code`` defaults from the status."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=headers,
    )


def _log_error(request: Request, event: str, status_code: int, **fields: Any) -> None:
    # 4xx are expected client outcomes; only 5xx are errors
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _unpack_http_detail(detail: Any) -> Tuple[str, Optional[str], Any]:
    """Split an ``HTTPException.detail`` into (message, code, details).

    Routes raise envelope-shaped details through ``_http_error``; anything
    else is treated as a plain message.
    """
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        # The refusal reason goes to logs only; clients see the fixed message
        kind = exc.kind.value if isinstance(exc, AuthenticationFailed) else None
        _log_error(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            failure_kind=kind,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        _log_error(request, "storage_unavailable", 503, operation=exc.operation)
        return _error_response(503, STORAGE_UNAVAILABLE_MESSAGE, code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(422, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        if exc.status_code >= 400:
            _log_error(request, "http_error", exc.status_code, error_code=code)
        return _error_response(
            exc.status_code, message, details, code=code, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
