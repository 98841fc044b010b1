"""
backend/registrack/services/member_service.py

Purpose:
    Member CRUD against the ``members`` collection. Every mutating operation
    returns the ActivityEntry describing what it changed; the router hands that
    entry to the activity logger. Deletion is the exception: its snapshot entry
    is written before the document is removed.

Dependencies:
    - registrack.services.audit_service
    - starlette.concurrency (file writes off the event loop)
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from bson import ObjectId
from fastapi import HTTPException, UploadFile, status
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from registrack.models.audit import ActivityAction, ActivityEntry, AuditedCollection
from registrack.models.common import date_to_datetime, document_to_wire
from registrack.models.member import (
    AUDITED_MEMBER_FIELDS,
    SORTABLE_MEMBER_FIELDS,
    MemberCreate,
    MemberUpdate,
)
from registrack.services.audit_service import diff_fields
from registrack.utils import search_regex, utcnow

logger = logging.getLogger("registrack.members")

SEARCH_FIELDS = ("first_name", "last_name", "email", "phone")
PROFILE_PICTURE_DIR = "profile-pictures"
PROFILE_PICTURE_URL_PREFIX = "/uploads/profile-pictures/"
ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

ActivityRecorder = Callable[[ActivityEntry], Awaitable[bool]]


def _to_storage(fields: dict) -> dict:
    if fields.get("date_of_birth") is not None:
        fields["date_of_birth"] = date_to_datetime(fields["date_of_birth"])
    return fields


def serialize_member(member: dict, creators: Optional[dict] = None) -> dict:
    out = document_to_wire(member)
    if isinstance(member.get("date_of_birth"), datetime):
        out["dateOfBirth"] = member["date_of_birth"].date().isoformat()
    created_by = member.get("created_by")
    if created_by is not None:
        out["createdBy"] = {
            "id": str(created_by),
            "username": (creators or {}).get(created_by),
        }
    out["fullName"] = f"{member.get('first_name', '')} {member.get('last_name', '')}".strip()
    return out


async def creator_names(db, members: list[dict]) -> dict:
    """Map created_by ObjectId -> username for a batch of members."""
    ids = list({m["created_by"] for m in members if m.get("created_by")})
    if not ids:
        return {}
    users = await db.users.find({"_id": {"$in": ids}}, {"username": 1}).to_list(length=None)
    return {u["_id"]: u.get("username") for u in users}


def build_member_query(
    search: Optional[str] = None,
    status_filter: Optional[str] = None,
    role: Optional[str] = None,
) -> dict:
    query: dict = {}
    if search and search.strip():
        pattern = search_regex(search)
        query["$or"] = [{field: pattern} for field in SEARCH_FIELDS]
    if status_filter:
        query["status"] = status_filter
    if role:
        query["role"] = role
    return query


def resolve_sort(sort_by: Optional[str], sort_order: Optional[str]) -> tuple[str, int]:
    """Map a wire field name and direction to a Mongo sort. Default: newest first."""
    field = SORTABLE_MEMBER_FIELDS.get(sort_by or "", "created_at")
    direction = 1 if (sort_order or "").lower() == "asc" else -1
    return field, direction


async def list_members(
    db,
    *,
    skip: int,
    limit: int,
    search: Optional[str] = None,
    status_filter: Optional[str] = None,
    role: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
) -> tuple[list[dict], int]:
    query = build_member_query(search, status_filter, role)
    field, direction = resolve_sort(sort_by, sort_order)
    total = await db.members.count_documents(query)
    members = await (
        db.members.find(query)
        .sort([(field, direction), ("_id", direction)])
        .skip(skip)
        .limit(limit)
        .to_list(length=limit)
    )
    return members, total


async def get_member(db, member_id: str) -> dict:
    member = await db.members.find_one({"_id": ObjectId(member_id)})
    if not member:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Member not found")
    return member


async def _insert_member(db, body: MemberCreate, actor_id, *, created_at: Optional[datetime] = None) -> dict:
    """Insert and return the stored document. DuplicateKeyError propagates."""
    now = utcnow()
    doc = _to_storage(body.model_dump())
    doc.update({
        "profile_picture": "",
        "created_by": actor_id,
        "created_at": created_at or now,
        "updated_at": now,
    })
    result = await db.members.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def member_for_user(user: dict, role_name: str) -> MemberCreate:
    """Member record mirroring a registered identity.

    The username's first word becomes the first name and the rest the last
    name ("User" when there is none). The registration date stands in for the
    unknown date of birth.
    """
    words = user["username"].split()
    registered = user.get("created_at") or utcnow()
    return MemberCreate(
        first_name=words[0] if words else user["username"],
        last_name=" ".join(words[1:]) or "User",
        email=user["email"],
        date_of_birth=registered.date(),
        role=role_name,
        status="active",
    )


async def create_member_for_user(db, user: dict, role_name: str) -> dict:
    """Insert the member that belongs to ``user``, created by that user.

    DuplicateKeyError propagates so the caller can undo the identity insert.
    """
    doc = await _insert_member(
        db, member_for_user(user, role_name), user["_id"], created_at=user.get("created_at"),
    )
    logger.info("Member created for user %s: %s", user["_id"], doc["_id"])
    return doc


async def create_member(db, body: MemberCreate, actor_id) -> tuple[dict, ActivityEntry]:
    try:
        doc = await _insert_member(db, body, actor_id)
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, "Member with this email already exists")
    logger.info("Member created: %s by %s", doc["_id"], actor_id)

    entry = ActivityEntry(
        action=ActivityAction.CREATE,
        collection_name=AuditedCollection.MEMBER,
        document_id=str(doc["_id"]),
        changes=body.model_dump(mode="json", by_alias=True),
    )
    return doc, entry


async def update_member(
    db, member_id: str, body: MemberUpdate,
) -> tuple[dict, Optional[ActivityEntry]]:
    """Apply a partial update.

    The returned entry is None when no audited field changed, e.g. a notes-only edit.
    """
    member = await get_member(db, member_id)
    fields = _to_storage(body.model_dump(exclude_unset=True, exclude_none=True))
    if not fields:
        return member, None

    changes = diff_fields(member, fields, AUDITED_MEMBER_FIELDS)

    fields["updated_at"] = utcnow()
    try:
        await db.members.update_one({"_id": member["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, "Email is already in use")
    member.update(fields)

    if not changes:
        return member, None
    entry = ActivityEntry(
        action=ActivityAction.UPDATE,
        collection_name=AuditedCollection.MEMBER,
        document_id=str(member["_id"]),
        changes=changes,
    )
    return member, entry


async def delete_member(db, member_id: str, record: ActivityRecorder) -> dict:
    """Delete a member, logging the full snapshot first.

    ``record`` is best-effort: a failed activity write does not stop the delete.
    """
    member = await get_member(db, member_id)
    await record(ActivityEntry(
        action=ActivityAction.DELETE,
        collection_name=AuditedCollection.MEMBER,
        document_id=str(member["_id"]),
        changes=document_to_wire(member),
    ))
    await db.members.delete_one({"_id": member["_id"]})
    logger.info("Member deleted: %s", member["_id"])
    return member


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


async def save_profile_picture(
    db, member_id: str, upload: Optional[UploadFile], *, upload_dir: str, max_bytes: int,
) -> tuple[str, ActivityEntry]:
    """Store an uploaded image and point the member at it.

    The previous file is not removed from disk.
    """
    if upload is None or not upload.filename:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Please upload a file")

    ext = Path(upload.filename).suffix.lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS or (upload.content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, "Only images (jpg, jpeg, png, webp) are allowed",
        )

    content = await upload.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            f"File size too large. Max {max_bytes // (1024 * 1024)}MB allowed.",
        )

    member = await get_member(db, member_id)

    filename = f"profile-{int(utcnow().timestamp() * 1000)}-{uuid.uuid4()}{ext}"
    await run_in_threadpool(_write_file, Path(upload_dir) / PROFILE_PICTURE_DIR / filename, content)

    old_ref = member.get("profile_picture") or ""
    new_ref = f"{PROFILE_PICTURE_URL_PREFIX}{filename}"
    await db.members.update_one(
        {"_id": member["_id"]},
        {"$set": {"profile_picture": new_ref, "updated_at": utcnow()}},
    )
    logger.info("Profile picture replaced for member %s", member["_id"])

    entry = ActivityEntry(
        action=ActivityAction.UPDATE,
        collection_name=AuditedCollection.MEMBER,
        document_id=str(member["_id"]),
        changes={"profilePicture": {"from": old_ref, "to": new_ref}},
    )
    return new_ref, entry
