"""
backend/registrack/middleware/logging.py

Purpose:
    Request logging and process-level logging setup. One JSON line per
    request on the ``registrack.http`` logger, keyed by a request id that is
    echoed back in ``X-Request-ID``.

Dependencies:
    - starlette BaseHTTPMiddleware
"""

import asyncio
import hashlib
import json
import logging
import os
import signal
import ssl
import sys
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("registrack")
access_logger = logging.getLogger("registrack.http")

REQUEST_ID_HEADER = "X-Request-ID"


def _hash_client(request: Request) -> Optional[str]:
    if not request.client:
        return None
    return hashlib.sha256((request.client.host or "").encode()).hexdigest()[:12]


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # Keep an upstream proxy's id so log lines can be joined across hops.
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        start = time.perf_counter()

        response: Response = await call_next(request)

        user = getattr(request.state, "user", None)
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "user_id": str(user["_id"]) if user else None,
            "client_ip_hash": _hash_client(request),
        }

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        access_logger.log(level, json.dumps(log_data))

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _terminate() -> None:
    # Let the server shut down; the process supervisor restarts it.
    os.kill(os.getpid(), signal.SIGTERM)


def _fatal_excepthook(exc_type, exc, tb) -> None:
    logger.critical("Uncaught exception, shutting down", exc_info=(exc_type, exc, tb))
    _terminate()


# Client disconnects and TLS failures surface here too; they are not fatal.
_TRANSPORT_ERRORS = (ConnectionError, ssl.SSLError)


def _is_transport_noise(context: dict) -> bool:
    exc = context.get("exception")
    if exc is None:
        return True
    return isinstance(exc, _TRANSPORT_ERRORS) or "transport" in context or "protocol" in context


def _fatal_loop_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    if _is_transport_noise(context):
        loop.default_exception_handler(context)
        return
    exc = context["exception"]
    logger.critical(
        "Unhandled error in event loop, shutting down: %s",
        context.get("message", "no message"),
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    _terminate()


def install_fatal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """Uncaught exceptions outside a request are fatal: log them and stop the process."""
    sys.excepthook = _fatal_excepthook
    loop.set_exception_handler(_fatal_loop_handler)
