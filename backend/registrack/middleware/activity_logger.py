"""
backend/registrack/middleware/activity_logger.py

Purpose:
    Observe finished API requests and hand an activity record to the
    AuditDispatcher once the response has been sent. The middleware never
    changes the response and never waits for the write.

    Handlers can take over the decision by setting ``request.state.activity``:
    an ActivityEntry is written as-is (with actor and client details added),
    ``None`` means "nothing to log". When the attribute is absent the request
    is classified from its method, path and bodies.

Dependencies:
    - registrack.services.audit_service
"""

import logging

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from registrack.services.audit_service import (
    AuditDispatcher,
    classify_request,
    client_ip,
    is_auditable_request,
    record_activity,
)

logger = logging.getLogger("registrack.audit")

_UNSET = object()


def _is_json(content_type: str) -> bool:
    return content_type.split(";")[0].strip().lower() == "application/json"


async def _buffer_request(receive: Receive) -> tuple[bytes, Receive]:
    """Read the whole request body up front and return a receive that replays it.

    The body is recorded whether or not the route reads it. Once the buffered
    messages are exhausted the replay falls through to the server's receive,
    so disconnect notifications still arrive.
    """
    messages: list[Message] = []
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] != "http.request" or not message.get("more_body", False):
            break

    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.request")

    async def replay() -> Message:
        if messages:
            return messages.pop(0)
        return await receive()

    return body, replay


class ActivityLoggerMiddleware:
    def __init__(self, app: ASGIApp, dispatcher: AuditDispatcher, truncate_ip: bool = False):
        self.app = app
        self.dispatcher = dispatcher
        self.truncate_ip = truncate_ip

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_body = b""
        if _is_json(headers.get("content-type", "")):
            request_body, receive = await _buffer_request(receive)
        response_chunks: list[bytes] = []
        response = {"status": 500, "json": False}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response["status"] = message["status"]
                response["json"] = _is_json(
                    Headers(raw=message.get("headers", [])).get("content-type", "")
                )
            elif message["type"] == "http.response.body" and response["json"]:
                response_chunks.append(message.get("body", b""))
            await send(message)

        await self.app(scope, receive, send_wrapper)

        # The response is complete at this point; everything below is off the
        # request path.
        self._schedule(
            scope,
            headers,
            status_code=response["status"],
            request_body=request_body,
            response_body=b"".join(response_chunks),
        )

    def _schedule(
        self,
        scope: Scope,
        headers: Headers,
        *,
        status_code: int,
        request_body: bytes,
        response_body: bytes,
    ) -> None:
        if status_code >= 400:
            return

        state = scope.get("state") or {}
        user = state.get("user")
        method = scope["method"]
        path = scope["path"]

        explicit = state.get("activity", _UNSET)
        if explicit is _UNSET:
            if not is_auditable_request(method, path, user):
                return
            entry = classify_request(
                method=method,
                path=path,
                path_params=scope.get("path_params") or {},
                request_body=request_body,
                response_body=response_body,
            )
        else:
            entry = explicit

        if entry is None or not user:
            return

        app = scope.get("app")
        database = getattr(getattr(app, "state", None), "database", None)
        if database is None or database.db is None:
            logger.error("No database available, activity not logged: %s %s", method, path)
            return

        self.dispatcher.submit(
            record_activity(
                database.db,
                entry,
                user_id=str(user["_id"]),
                ip_address=client_ip(headers, scope.get("client"), truncate=self.truncate_ip),
                user_agent=headers.get("user-agent", ""),
            )
        )
