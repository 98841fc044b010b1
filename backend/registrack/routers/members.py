"""
backend/registrack/routers/members.py

Purpose:
    Member HTTP router. Reads are open to any authenticated identity;
    mutations are admin-only. Mutations publish their activity entry on
    ``request.state.activity`` for the activity logger middleware.

Dependencies:
    - registrack.services.member_service
    - registrack.services.auth_service
    - registrack.services.audit_service
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status

from registrack.config import settings
from registrack.database import get_db
from registrack.models.audit import ActivityEntry
from registrack.models.member import MemberCreate, MemberUpdate
from registrack.services.audit_service import client_ip, record_activity
from registrack.services.auth_service import get_current_user, require_admin
from registrack.services.member_service import (
    create_member,
    creator_names,
    delete_member,
    get_member,
    list_members,
    save_profile_picture,
    serialize_member,
    update_member,
)
from registrack.utils import page_count, resolve_pagination

router = APIRouter(
    prefix="/api/members",
    tags=["members"],
    dependencies=[Depends(get_current_user)],
)


def _activity_recorder(request: Request, db, user: dict):
    """Synchronous (awaited) activity write for entries that must precede the operation."""
    async def _record(entry: ActivityEntry) -> bool:
        return await record_activity(
            db,
            entry,
            user_id=str(user["_id"]),
            ip_address=client_ip(request.headers, request.client, truncate=settings.AUDIT_TRUNCATE_IP),
            user_agent=request.headers.get("user-agent", ""),
        )
    return _record


@router.get("")
async def list_all(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    role: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    order: Optional[str] = Query(None),
    db=Depends(get_db),
):
    """List members with search, filters, sorting and offset pagination."""
    page_num, page_size, skip = resolve_pagination(
        page, limit,
        default_limit=settings.DEFAULT_PAGE_LIMIT,
        max_limit=settings.MAX_PAGE_LIMIT,
    )
    members, total = await list_members(
        db,
        skip=skip,
        limit=page_size,
        search=search,
        status_filter=status_filter,
        role=role,
        sort_by=sort_by,
        sort_order=sort_order or order,
    )
    creators = await creator_names(db, members)
    return {
        "success": True,
        "count": len(members),
        "total": total,
        "page": page_num,
        "pages": page_count(total, page_size),
        "data": [serialize_member(m, creators) for m in members],
    }


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
async def create(
    body: MemberCreate, request: Request, user=Depends(get_current_user), db=Depends(get_db),
):
    """Create a member (admin only). Email must be unique."""
    member, entry = await create_member(db, body, user["_id"])
    request.state.activity = entry
    creators = {user["_id"]: user.get("username")}
    return {"success": True, "data": serialize_member(member, creators)}


@router.get("/{id}")
async def get_one(id: str, db=Depends(get_db)):
    member = await get_member(db, id)
    return {"success": True, "data": serialize_member(member, await creator_names(db, [member]))}


@router.api_route("/{id}", methods=["PUT", "PATCH"], dependencies=[Depends(require_admin)])
async def update(id: str, body: MemberUpdate, request: Request, db=Depends(get_db)):
    """Update a member (admin only). Only audited fields produce an activity entry."""
    member, entry = await update_member(db, id, body)
    request.state.activity = entry
    return {"success": True, "data": serialize_member(member, await creator_names(db, [member]))}


@router.delete("/{id}", dependencies=[Depends(require_admin)])
async def delete(id: str, request: Request, user=Depends(get_current_user), db=Depends(get_db)):
    """Delete a member (admin only). The snapshot is logged before the delete."""
    await delete_member(db, id, _activity_recorder(request, db, user))
    request.state.activity = None
    return {"success": True, "data": {}}


@router.post("/{id}/upload", dependencies=[Depends(require_admin)])
async def upload_profile_picture(
    id: str,
    request: Request,
    profile_picture: Optional[UploadFile] = File(None, alias="profilePicture"),
    db=Depends(get_db),
):
    """Replace a member's profile picture (multipart field ``profilePicture``)."""
    ref, entry = await save_profile_picture(
        db,
        id,
        profile_picture,
        upload_dir=settings.UPLOAD_DIR,
        max_bytes=settings.MAX_UPLOAD_BYTES,
    )
    request.state.activity = entry
    return {"success": True, "data": {"profilePicture": ref}}
