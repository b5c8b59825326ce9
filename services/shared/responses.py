"""
Shared - Response Translator

Turns a ServiceError (or a framework-level problem) into the JSON error
answer every service returns: `{"error": "..."}` plus any identifiers the
operation chose to echo back. 500-class answers always carry a generic
message; the real cause only goes to the log.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.SERVICE_TIMEOUT: 504,
    ErrorKind.PAYMENT_DECLINED: 402,
    ErrorKind.CONFLICT: 400,
    ErrorKind.UPSTREAM_FAILURE: 500,
    ErrorKind.INTERNAL_FAILURE: 500,
}

GENERIC_ERROR = "Internal server error"


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND.get(kind, 500)


def error_response(err: ServiceError) -> JSONResponse:
    status = status_for(err.kind)
    body = {"error": err.message or GENERIC_ERROR}
    if status < 500:
        body.update(err.extra)
    return JSONResponse(status_code=status, content=body)


def _missing_fields(exc: RequestValidationError) -> list[str]:
    fields = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        if loc and loc[-1] not in fields:
            fields.append(loc[-1])
    return fields


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status = status_for(exc.kind)
        if status >= 500:
            logger.error(
                "%s %s failed: %s (%s)",
                request.method, request.url.path, exc.message, exc.kind.value,
            )
        else:
            logger.warning(
                "%s %s rejected: %s", request.method, request.url.path, exc.message
            )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = _missing_fields(exc)
        message = (
            f"Invalid or missing fields: {', '.join(fields)}"
            if fields
            else "Invalid request body"
        )
        logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            logger.warning("Route not found: %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=404,
                content={
                    "error": "Route not found",
                    "method": request.method,
                    "path": request.url.path,
                },
            )
        return JSONResponse(
            status_code=exc.status_code, content={"error": str(exc.detail)}
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": GENERIC_ERROR})
