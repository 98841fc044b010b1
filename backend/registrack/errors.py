"""
backend/registrack/errors.py

Purpose:
    Global exception handlers. Every failure leaves the API in the same
    envelope: ``{"success": false, "message", "error": {"statusCode",
    "message", "stack"?}}``. Stack traces are only included in development.

Dependencies:
    - fastapi / starlette exception types
    - pymongo.errors, bson.errors
"""

import logging
import traceback
from typing import Optional

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from registrack.config import settings

logger = logging.getLogger("registrack")


def error_response(status_code: int, message: str, exc: Optional[BaseException] = None, **extra) -> JSONResponse:
    error: dict = {"statusCode": status_code, "message": message}
    if exc is not None and settings.is_development:
        error["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    body = {"success": False, "message": message, "error": error, **extra}
    return JSONResponse(status_code=status_code, content=body)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    response = error_response(exc.status_code, message, exc)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "query" prefix for cleaner messages
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    summary = ", ".join(f"{e['field']}: {e['message']}" for e in errors)
    return error_response(400, f"Validation Error: {summary}", errors=errors)


async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return error_response(400, "Invalid ID.", exc)


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return error_response(409, "Duplicate entry.", exc)


async def db_unavailable_handler(request: Request, exc: Exception):
    logger.error("Database unavailable: %s %s (%s)", request.method, request.url.path, type(exc).__name__)
    return error_response(503, "Service temporarily unavailable.", exc)


async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "Internal Server Error", exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(InvalidId, invalid_object_id_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(ServerSelectionTimeoutError, db_unavailable_handler)
    app.add_exception_handler(ConnectionFailure, db_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
