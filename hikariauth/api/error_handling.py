from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from hikariauth.api.schemas import ErrorResponse
from hikariauth.logging import get_logger
from hikariauth.service.errors import ServiceError
from hikariauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_SERVER_ERROR = "An unexpected error occurred. Please try again."

# Framework-raised statuses (routing, method, query validation)
FRAMEWORK_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    422: "validation_error",
    429: "rate_limited",
}


def code_for_status(status_code: int) -> str:
    return FRAMEWORK_CODES.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    *,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    """``{success: false, message, code}`` plus ``Retry-After`` when throttled."""
    body = ErrorResponse(
        message=message,
        code=code or code_for_status(status_code),
        retry_after=retry_after,
    )
    headers = None
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=status_code, content=body.body(), headers=headers)


def _first_validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        where = [str(part) for part in error.get("loc", ()) if part not in ("query", "path", "body")]
        text = error.get("msg", "Invalid request")
        return f"{'.'.join(where)}: {text}" if where else text
    return "Invalid request"


async def _on_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "auth_request_refused",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.error_code,
        reason=exc.message,
    )
    return error_response(
        exc.status_code, exc.message, exc.error_code, retry_after=exc.retry_after
    )


async def _on_constraint_violation(request: Request, exc: ConstraintViolation) -> JSONResponse:
    logger.warning("unique_constraint_hit", path=request.url.path, field=exc.field)
    return error_response(400, exc.message, "conflict")


async def _on_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _first_validation_message(exc)
    logger.info("request_rejected", path=request.url.path, reason=message)
    return error_response(400, message, "validation_error")


async def _on_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return error_response(exc.status_code, message)


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return error_response(500, GENERIC_SERVER_ERROR, "server_error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(ConstraintViolation, _on_constraint_violation)
    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(HTTPException, _on_http_exception)
    app.add_exception_handler(Exception, _on_unhandled)
