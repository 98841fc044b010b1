from typing import Optional

from fastapi import APIRouter, Depends, Query

from registrack.config import settings
from registrack.database import get_db
from registrack.services.auth_service import get_current_user, require_admin
from registrack.services.dashboard_service import (
    build_activity_query,
    dashboard_stats,
    list_activity,
    member_stats,
)
from registrack.utils import page_count, resolve_pagination

router = APIRouter(
    prefix="/api/dashboard",
    tags=["dashboard"],
    dependencies=[Depends(get_current_user), Depends(require_admin)],
)


@router.get("/stats")
async def stats(db=Depends(get_db)):
    """Member/user counts, role distribution, recent growth and latest activity."""
    data = await dashboard_stats(
        db,
        recent_limit=settings.DASHBOARD_RECENT_ACTIVITY_LIMIT,
        growth_months=settings.DASHBOARD_GROWTH_MONTHS,
    )
    return {"success": True, "data": data}


@router.get("/activity-logs")
async def activity_logs(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[str] = Query(None),
    collection_name: Optional[str] = Query(None, alias="collectionName"),
    document_id: Optional[str] = Query(None, alias="documentId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db=Depends(get_db),
):
    """Activity log, newest first, joined with the acting user."""
    page_num, page_size, skip = resolve_pagination(
        page, limit,
        default_limit=settings.ACTIVITY_LOG_PAGE_LIMIT,
        max_limit=settings.MAX_PAGE_LIMIT,
    )
    query = build_activity_query(
        user_id=user_id,
        action=action,
        collection_name=collection_name,
        document_id=document_id,
        start_date=start_date,
        end_date=end_date,
    )
    logs, total = await list_activity(db, query, skip=skip, limit=page_size)
    return {
        "success": True,
        "count": len(logs),
        "total": total,
        "page": page_num,
        "pages": page_count(total, page_size),
        "data": logs,
    }


@router.get("/member-stats")
async def member_statistics(db=Depends(get_db)):
    data = await member_stats(db, trend_months=settings.MEMBER_TREND_MONTHS)
    return {"success": True, "data": data}
