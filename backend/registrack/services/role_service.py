import logging
from typing import Optional

from bson import ObjectId
from fastapi import HTTPException, status
from pymongo.errors import DuplicateKeyError

from registrack.models.common import document_to_wire
from registrack.models.role import DEFAULT_ROLE, DEFAULT_ROLES, RoleCreate, RoleUpdate
from registrack.utils import utcnow

logger = logging.getLogger("registrack.roles")


def serialize_role(role: Optional[dict]) -> Optional[dict]:
    if not role:
        return None
    return document_to_wire(role)


async def get_role(db, role_id: str) -> dict:
    role = await db.roles.find_one({"_id": ObjectId(role_id)})
    if not role:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Role not found")
    return role


async def get_role_by_name(db, name: str) -> Optional[dict]:
    return await db.roles.find_one({"name": name.strip().lower()})


async def list_roles(db) -> list[dict]:
    return await db.roles.find({}).sort("name", 1).to_list(length=None)


async def create_role(db, body: RoleCreate) -> dict:
    now = utcnow()
    doc = {**body.model_dump(), "created_at": now, "updated_at": now}
    try:
        result = await db.roles.insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, "Role with this name already exists")
    doc["_id"] = result.inserted_id
    logger.info("Role created: %s", doc["name"])
    return doc


async def update_role(db, role_id: str, body: RoleUpdate) -> dict:
    role = await get_role(db, role_id)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        return role
    fields["updated_at"] = utcnow()
    try:
        await db.roles.update_one({"_id": role["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, "Role with this name already exists")
    role.update(fields)
    return role


async def delete_role(db, role_id: str) -> None:
    role = await get_role(db, role_id)
    assigned = await db.users.count_documents({"role_id": role["_id"]})
    if assigned:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            f"Role is assigned to {assigned} user(s) and cannot be deleted",
        )
    await db.roles.delete_one({"_id": role["_id"]})
    logger.info("Role deleted: %s", role["name"])


async def seed_default_roles(db) -> dict:
    """Create the built-in roles when missing. Existing roles are left untouched."""
    created = []
    now = utcnow()
    for name, permissions in DEFAULT_ROLES.items():
        if await db.roles.find_one({"name": name}, {"_id": 1}):
            continue
        try:
            await db.roles.insert_one({
                "name": name,
                "description": "",
                "permissions": list(permissions),
                "is_default": name == DEFAULT_ROLE,
                "created_at": now,
                "updated_at": now,
            })
        except DuplicateKeyError:
            # Another worker seeded it first.
            continue
        created.append(name)
    return {"created": created, "total": len(DEFAULT_ROLES)}
