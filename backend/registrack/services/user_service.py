import logging
from typing import Optional

from bson import ObjectId
from fastapi import HTTPException, status
from pymongo.errors import DuplicateKeyError

from registrack.models.common import to_wire
from registrack.models.user import UserUpdate
from registrack.services.auth_service import attach_role, hash_password
from registrack.services.member_service import create_member_for_user
from registrack.services.role_service import get_role_by_name, serialize_role
from registrack.utils import search_regex, utcnow

logger = logging.getLogger("registrack.users")

_DUPLICATE_USER = "User with this email or username already exists"
_DUPLICATE_MEMBER = "Email already exists as a member"


def serialize_user(user: dict, *, include_permissions: bool = True) -> dict:
    """Public identity representation; the password hash never leaves the service."""
    role = user.get("role")
    role_out = None
    if isinstance(role, dict):
        role_out = serialize_role(role)
        if not include_permissions:
            role_out = {"id": role_out["id"], "name": role_out["name"]}
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "role": role_out,
        "isActive": user.get("is_active", True),
        "lastLogin": to_wire(user.get("last_login")),
        "createdAt": to_wire(user.get("created_at")),
        "updatedAt": to_wire(user.get("updated_at")),
    }


async def _require_role(db, role_name: str) -> dict:
    role = await get_role_by_name(db, role_name)
    if not role:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid role")
    return role


async def create_user(db, *, username: str, email: str, password: str, role_name: str) -> dict:
    """Insert a new identity. Uniqueness of email and username comes from the indexes."""
    role = await _require_role(db, role_name)
    now = utcnow()
    user_doc = {
        "username": username,
        "email": email,
        "hashed_password": hash_password(password),
        "role_id": role["_id"],
        "is_active": True,
        "last_login": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db.users.insert_one(user_doc)
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, _DUPLICATE_USER)
    user_doc["_id"] = result.inserted_id
    user_doc["role"] = role
    logger.info("User registered: %s (%s)", user_doc["_id"], role["name"])
    return user_doc


async def register_user(db, *, username: str, email: str, password: str, role_name: str) -> dict:
    """Create an identity together with its member record.

    Both inserts succeed or neither persists: when the member insert fails the
    identity is removed again before the error propagates.
    """
    user = await create_user(db, username=username, email=email, password=password, role_name=role_name)
    try:
        await create_member_for_user(db, user, user["role"]["name"])
    except DuplicateKeyError:
        await db.users.delete_one({"_id": user["_id"]})
        logger.info("Registration rolled back, member email taken: %s", email)
        raise HTTPException(status.HTTP_409_CONFLICT, _DUPLICATE_MEMBER)
    except Exception:
        await db.users.delete_one({"_id": user["_id"]})
        raise
    return user


async def get_user(db, user_id: str) -> dict:
    user = await db.users.find_one({"_id": ObjectId(user_id)}, {"hashed_password": 0})
    if not user:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "User not found")
    return await attach_role(db, user)


async def list_users(
    db,
    *,
    skip: int,
    limit: int,
    search: Optional[str] = None,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> tuple[list[dict], int]:
    query: dict = {}
    if search and search.strip():
        pattern = search_regex(search)
        query["$or"] = [{"username": pattern}, {"email": pattern}]
    if role:
        role_doc = await get_role_by_name(db, role)
        if not role_doc:
            return [], 0
        query["role_id"] = role_doc["_id"]
    if is_active is not None:
        query["is_active"] = is_active

    total = await db.users.count_documents(query)
    users = await (
        db.users.find(query, {"hashed_password": 0})
        .sort("created_at", -1)
        .skip(skip)
        .limit(limit)
        .to_list(length=limit)
    )

    role_ids = list({u["role_id"] for u in users if u.get("role_id")})
    roles = await db.roles.find({"_id": {"$in": role_ids}}).to_list(length=None) if role_ids else []
    by_id = {r["_id"]: r for r in roles}
    for user in users:
        user["role"] = by_id.get(user.get("role_id"))
    return users, total


async def update_user(db, user_id: str, body: UserUpdate, actor: dict) -> dict:
    user = await get_user(db, user_id)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)

    if user["_id"] == actor["_id"] and fields.get("is_active") is False:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "You cannot deactivate your own account")

    role_name = fields.pop("role", None)
    if role_name:
        fields["role_id"] = (await _require_role(db, role_name))["_id"]

    if not fields:
        return user

    fields["updated_at"] = utcnow()
    try:
        await db.users.update_one({"_id": user["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, _DUPLICATE_USER)
    user.update(fields)
    logger.info("User %s updated by %s: %s", user["_id"], actor["_id"], sorted(fields))
    return await attach_role(db, user)


async def delete_user(db, user_id: str, actor: dict) -> None:
    user = await get_user(db, user_id)
    if user["_id"] == actor["_id"]:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "You cannot delete your own account")
    await db.users.delete_one({"_id": user["_id"]})
    logger.info("User %s deleted by %s", user["_id"], actor["_id"])
