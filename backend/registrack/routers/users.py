from typing import Optional

from fastapi import APIRouter, Depends, Query

from registrack.config import settings
from registrack.database import get_db
from registrack.models.user import UserUpdate
from registrack.services.auth_service import get_current_user, require_admin
from registrack.services.user_service import (
    delete_user,
    get_user,
    list_users,
    serialize_user,
    update_user,
)
from registrack.utils import page_count, resolve_pagination

# Activity for this router is classified by the activity logger middleware.
router = APIRouter(
    prefix="/api/users",
    tags=["users"],
    dependencies=[Depends(get_current_user), Depends(require_admin)],
)


@router.get("")
async def list_all(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    db=Depends(get_db),
):
    page_num, page_size, skip = resolve_pagination(
        page, limit,
        default_limit=settings.DEFAULT_PAGE_LIMIT,
        max_limit=settings.MAX_PAGE_LIMIT,
    )
    users, total = await list_users(
        db, skip=skip, limit=page_size, search=search, role=role, is_active=is_active,
    )
    return {
        "success": True,
        "count": len(users),
        "total": total,
        "page": page_num,
        "pages": page_count(total, page_size),
        "data": [serialize_user(u, include_permissions=False) for u in users],
    }


@router.get("/{id}")
async def get_one(id: str, db=Depends(get_db)):
    return {"success": True, "data": serialize_user(await get_user(db, id))}


@router.api_route("/{id}", methods=["PUT", "PATCH"])
async def update(id: str, body: UserUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    """Change username, email, role or active flag of an identity."""
    updated = await update_user(db, id, body, actor=user)
    return {"success": True, "data": serialize_user(updated)}


@router.delete("/{id}")
async def delete(id: str, user=Depends(get_current_user), db=Depends(get_db)):
    await delete_user(db, id, actor=user)
    return {"success": True, "data": {}}
