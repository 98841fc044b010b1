"""Immutable activity logging for members, users and roles.

All activity entries are insert-only. This module intentionally exposes NO
update or delete operations on the activity_logs collection.

Writes are best-effort: ``record_activity`` never raises, and the request
pipeline hands it to an ``AuditDispatcher`` so the write happens after the
response has already gone out.
"""

import asyncio
import json
import logging
from typing import Any, Iterable, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic.alias_generators import to_camel

from registrack.models.audit import ActivityAction, ActivityEntry, ActivityLog, AuditedCollection

logger = logging.getLogger("registrack.audit")

# Method -> action. Any method not listed (PUT, PATCH, ...) is an update.
_ACTION_BY_METHOD: dict[str, ActivityAction] = {
    "POST": ActivityAction.CREATE,
    "DELETE": ActivityAction.DELETE,
}
# Path suffix -> action, checked after the method and winning over it.
_ACTION_BY_PATH_SUFFIX: tuple[tuple[str, ActivityAction], ...] = (
    ("/login", ActivityAction.LOGIN),
    ("/logout", ActivityAction.LOGOUT),
)
# Path fragment -> collection, first match wins. Everything else is a Member.
_COLLECTION_BY_PATH_FRAGMENT: tuple[tuple[str, AuditedCollection], ...] = (
    ("/users", AuditedCollection.USER),
    ("/roles", AuditedCollection.ROLE),
)


def classify_action(method: str, path: str) -> ActivityAction:
    action = _ACTION_BY_METHOD.get(method.upper(), ActivityAction.UPDATE)
    for suffix, suffix_action in _ACTION_BY_PATH_SUFFIX:
        if path.endswith(suffix):
            return suffix_action
    return action


def classify_collection(path: str) -> AuditedCollection:
    for fragment, collection in _COLLECTION_BY_PATH_FRAGMENT:
        if fragment in path:
            return collection
    return AuditedCollection.MEMBER


def is_auditable_request(method: str, path: str, user: Optional[dict]) -> bool:
    """Anonymous requests and plain reads are never logged; downloads are."""
    if not user:
        return False
    if method.upper() == "GET" and "download" not in path:
        return False
    return True


def _parse_json(raw: Optional[bytes]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


def _id_from_response(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    if body.get("id"):
        return str(body["id"])
    data = body.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    return None


def classify_request(
    *,
    method: str,
    path: str,
    path_params: Mapping[str, Any],
    request_body: Optional[bytes],
    response_body: Optional[bytes],
) -> Optional[ActivityEntry]:
    """Derive an activity entry from the shape of a finished request.

    Returns None when no document id can be determined; such requests are
    not logged.
    """
    action = classify_action(method, path)
    collection = classify_collection(path)

    document_id = path_params.get("id")
    if action is ActivityAction.CREATE:
        document_id = _id_from_response(_parse_json(response_body)) or document_id
    if not document_id:
        logger.debug("No document id for %s %s, activity not logged", method, path)
        return None

    changes = None
    if action is ActivityAction.UPDATE:
        body = _parse_json(request_body)
        if isinstance(body, dict) and body:
            changes = body

    return ActivityEntry(
        action=action,
        collection_name=collection,
        document_id=str(document_id),
        changes=changes,
    )


def _blank_to_none(value: Any) -> Any:
    return None if value == "" else value


def diff_fields(before: Mapping[str, Any], after: Mapping[str, Any], fields: Iterable[str]) -> dict:
    """Field-level diff restricted to ``fields``.

    Only keys present in ``after`` are compared. The result is keyed by the
    camelCase wire name: ``{"firstName": {"from": "Ann", "to": "Anna"}}``.
    """
    changes: dict[str, dict] = {}
    for field in fields:
        if field not in after:
            continue
        old = _blank_to_none(before.get(field))
        new = _blank_to_none(after[field])
        if old != new:
            changes[to_camel(field)] = {"from": before.get(field), "to": after[field]}
    return changes


def _as_object_id(value: str) -> Any:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return value


def _mask_host(ip: str) -> str:
    """Replace the host part of a client address: ``192.168.1.xxx``, ``2001:db8::xxx``.

    Activity records keep the full address by default so an admin can see
    where a change came from. Deployments that must not retain personal data
    turn on ``AUDIT_TRUNCATE_IP`` and get the masked form. Values that are
    neither a dotted quad nor colon-separated are stored unchanged.
    """
    head = ip.rpartition(".")[0]
    if head.count(".") == 2:
        return f"{head}.xxx"
    head, sep, _ = ip.rpartition(":")
    if sep:
        return f"{head}:xxx"
    return ip


def client_ip(headers: Mapping[str, str], client: Optional[tuple], *, truncate: bool = False) -> str:
    """Extract the client IP, preferring X-Forwarded-For (behind a proxy)."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    elif client:
        ip = client[0] or ""
    else:
        ip = ""
    return _mask_host(ip) if truncate else ip


def build_activity_document(
    entry: ActivityEntry, *, user_id: str, ip_address: str = "", user_agent: str = "",
) -> dict:
    record = ActivityLog(
        **entry.model_dump(),
        user_id=str(user_id),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    doc = record.model_dump(mode="python", exclude_none=True)
    doc["action"] = record.action.value
    doc["collection_name"] = record.collection_name.value
    doc["document_id"] = _as_object_id(record.document_id)
    doc["user_id"] = _as_object_id(record.user_id)
    return doc


async def record_activity(
    db,
    entry: ActivityEntry,
    *,
    user_id: str,
    ip_address: str = "",
    user_agent: str = "",
) -> bool:
    """Write an immutable activity record to the activity_logs collection.

    Returns True when the record was stored. Failures are logged and
    swallowed: activity logging must never fail the request it describes.
    """
    try:
        doc = build_activity_document(
            entry, user_id=user_id, ip_address=ip_address, user_agent=user_agent,
        )
        await db.activity_logs.insert_one(doc)
    except Exception:
        logger.exception(
            "Failed to write activity log: action=%s collection=%s document=%s actor=%s",
            entry.action.value, entry.collection_name.value, entry.document_id, user_id,
        )
        return False
    return True


class AuditDispatcher:
    """Runs activity writes as detached tasks.

    The request path only schedules; it never awaits. ``drain`` lets shutdown
    (and tests) wait for writes still in flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Activity log task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Activity log task failed", exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d activity log writes still pending after drain", len(pending))
