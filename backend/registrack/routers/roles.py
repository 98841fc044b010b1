from fastapi import APIRouter, Depends, status

from registrack.database import get_db
from registrack.models.role import RoleCreate, RoleUpdate
from registrack.services.auth_service import get_current_user, require_admin
from registrack.services.role_service import (
    create_role,
    delete_role,
    get_role,
    list_roles,
    serialize_role,
    update_role,
)

# Activity for this router is classified by the activity logger middleware.
router = APIRouter(
    prefix="/api/roles",
    tags=["roles"],
    dependencies=[Depends(get_current_user), Depends(require_admin)],
)


@router.get("")
async def list_all(db=Depends(get_db)):
    roles = await list_roles(db)
    return {"success": True, "count": len(roles), "data": [serialize_role(r) for r in roles]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create(body: RoleCreate, db=Depends(get_db)):
    return {"success": True, "data": serialize_role(await create_role(db, body))}


@router.get("/{id}")
async def get_one(id: str, db=Depends(get_db)):
    return {"success": True, "data": serialize_role(await get_role(db, id))}


@router.api_route("/{id}", methods=["PUT", "PATCH"])
async def update(id: str, body: RoleUpdate, db=Depends(get_db)):
    return {"success": True, "data": serialize_role(await update_role(db, id, body))}


@router.delete("/{id}")
async def delete(id: str, db=Depends(get_db)):
    """Delete a role that no identity references any more."""
    await delete_role(db, id)
    return {"success": True, "data": {}}
