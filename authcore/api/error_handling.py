from __future__ import annotations

from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authcore.api.schemas import Envelope
from authcore.logging import get_logger, sanitize_error_message
from authcore.service.errors import ServiceError
from authcore.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    errors: Optional[List[str]] = None,
    data: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(success=False, message=message, errors=errors or None, data=data or None)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(exclude_none=True))


def _format_validation_errors(exc: RequestValidationError) -> List[str]:
    formatted = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = ".".join(loc)
        msg = str(err.get("msg", "invalid value"))
        # pydantic prefixes custom validator messages
        msg = msg.removeprefix("Value error, ")
        formatted.append(f"{field}: {msg}" if field else msg)
    return formatted


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an ``Envelope`` with ``success=false``."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            detail=exc.detail,
        )
        return _error_response(409, "Request conflicts with existing data")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.errors,
            data={"code": exc.error_code, **exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _format_validation_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "Validation failed", errors, data={"code": "validation_error"})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "Internal server error")
