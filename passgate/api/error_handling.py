from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from passgate.api.schemas import Envelope, ErrorBody
from passgate.logging import get_logger
from passgate.service.errors import AccountLockedError, ServiceError
from passgate.storage.errors import ConstraintViolation, StoreUnavailableError

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    404: "not_found",
    405: "bad_request",
    409: "conflict",
    422: "validation_error",
    503: "unavailable",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        # Never echo submitted values; they may be passwords or tokens
        details.append({"field": ".".join(loc) or None, "message": err.get("msg")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            message=exc.message,
        )
        return _error_response(
            503, "Service temporarily unavailable, please retry", code="unavailable"
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, AccountLockedError):
            headers = {"Retry-After": str(exc.retry_after_minutes * 60)}
        elif exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "Invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
