from __future__ import annotations

import traceback
from typing import Any, Iterable, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from gadgetgalaxy.config import get_settings
from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import RateLimited, ServiceError
from gadgetgalaxy.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def validation_errors(errors: Iterable[dict]) -> List[dict]:
    """Flatten pydantic error dicts to ``[{field, message}]``."""
    flattened = []
    for err in errors:
        loc = [part for part in err.get("loc", ()) if part not in ("body", "query", "form")]
        field = str(loc[-1]) if loc else "body"
        ctx_error = (err.get("ctx") or {}).get("error")
        message = str(ctx_error) if err.get("type") == "value_error" and ctx_error else err.get("msg", "Invalid value")
        flattened.append({"field": field, "message": message})
    return flattened


def _error_response(
    status_code: int,
    message: str,
    *,
    errors: Optional[list] = None,
    extra: Optional[dict] = None,
    exc: Optional[BaseException] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    if extra:
        body.update(extra)
    if exc is not None and not get_settings().is_production:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the ``{success: false}`` envelope."""

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
        headers = None
        if isinstance(exc, RateLimited) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code,
            exc.message,
            errors=getattr(exc, "errors", None),
            extra=exc.detail,
            headers=headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            field=exc.field,
        )
        message = "Email is already registered" if exc.field == "email" else exc.message
        return _error_response(400, message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = validation_errors(exc.errors())
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            fields=[e["field"] for e in errors],
        )
        return _error_response(400, "Validation Error", errors=errors)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 404 and message == "Not Found":
            message = f"Route {request.url.path} not found"
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error", exc=exc)
