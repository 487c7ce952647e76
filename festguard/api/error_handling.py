from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from festguard.api.schemas import ErrorBody, ErrorEnvelope
from festguard.config import get_settings
from festguard.logging import get_correlation_id, get_logger, sanitize_error_message
from festguard.service.errors import AppError, ErrorCode, RateLimitedError, ValidationError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.VALIDATION_ERROR,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.REQUEST_TOO_LARGE,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
    502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
}


def _error_code_for_status(status_code: int) -> ErrorCode:
    return _STATUS_TO_CODE.get(status_code, ErrorCode.INTERNAL_ERROR)


def _request_id(request: Optional[Request]) -> Optional[str]:
    if request is not None:
        rid = getattr(request.state, "correlation_id", None)
        if rid:
            return rid
    return get_correlation_id()


def error_response(
    err: AppError,
    request_id: Optional[str] = None,
    *,
    status_code: Optional[int] = None,
) -> JSONResponse:
    """Serialize ``err`` into the ``{"error": {...}}`` envelope.

    5xx bodies never carry details; when EXPOSE_ERROR_CAUSES is on they carry
    a sanitized description of the underlying cause instead.
    """
    err.with_request_id(request_id)
    details = err.client_details()
    if err.is_server_error and err.cause is not None and get_settings().expose_error_causes:
        details = {"cause": sanitize_error_message(f"{type(err.cause).__name__}: {err.cause}")}
    body = ErrorBody(
        code=err.code.value,
        message=err.message,
        details=details,
        request_id=err.request_id,
    )
    headers = {}
    if isinstance(err, RateLimitedError):
        headers["Retry-After"] = str(err.retry_after)
    elif err.status_code == 429:
        headers["Retry-After"] = "1"
    return JSONResponse(
        status_code=status_code or err.status_code,
        content=ErrorEnvelope(error=body).model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


def log_app_error(request: Request, err: AppError) -> None:
    fields = dict(
        path=request.url.path,
        method=request.method,
        status_code=err.status_code,
        error_code=err.code.value,
        op=err.op,
    )
    if err.is_server_error:
        cause = err.cause
        logger.error(
            "server_error",
            message=err.message,
            cause_type=type(cause).__name__ if cause else None,
            cause=sanitize_error_message(str(cause)) if cause else None,
            retryable=err.retryable,
            **fields,
        )
    else:
        logger.warning("client_error", message=err.message, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure through the error envelope."""

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log_app_error(request, exc)
        return error_response(exc, _request_id(request))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(item.get("loc", ())), "msg": item.get("msg"), "type": item.get("type")}
            for item in exc.errors()
        ]
        err = ValidationError("Request validation failed", details={"errors": errors})
        log_app_error(request, err)
        return error_response(err, _request_id(request))

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code = _error_code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) and exc.status_code < 500 else None
        err = AppError(message, code=code)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        response = error_response(err, _request_id(request), status_code=exc.status_code)
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response


__all__ = ["error_response", "log_app_error", "register_exception_handlers"]
