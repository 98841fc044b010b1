"""
backend/registrack/services/dashboard_service.py

Purpose:
    Read-only aggregates over members, users and activity logs for the admin
    dashboard. Each figure is read independently; there is no snapshot
    across collections.

Dependencies:
    - registrack.config (window sizes)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException, status

from registrack.models.audit import ActivityAction, AuditedCollection
from registrack.models.common import document_to_wire, to_wire
from registrack.models.role import ADMIN_ROLE
from registrack.utils import utcnow

logger = logging.getLogger("registrack.dashboard")

_VALID_ACTIONS = {a.value for a in ActivityAction}
_VALID_COLLECTIONS = {c.value for c in AuditedCollection}


def months_ago(months: int, now: Optional[datetime] = None) -> datetime:
    """First instant of the month ``months - 1`` months before ``now``.

    ``months_ago(6)`` in June covers January through June.
    """
    now = now or utcnow()
    year, month = now.year, now.month - (months - 1)
    while month < 1:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _month_bucket_pipeline(since: datetime) -> list[dict]:
    return [
        {"$match": {"created_at": {"$gte": since}}},
        {
            "$group": {
                "_id": {
                    "year": {"$year": "$created_at"},
                    "month": {"$month": "$created_at"},
                },
                "count": {"$sum": 1},
            }
        },
        {"$sort": {"_id.year": 1, "_id.month": 1}},
    ]


def _count_by(field: str, *, by_count: bool = False) -> list[dict]:
    pipeline: list[dict] = [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
    pipeline.append({"$sort": {"count": -1, "_id": 1}} if by_count else {"$sort": {"_id": 1}})
    return pipeline


async def _aggregate(collection, pipeline: list[dict]) -> list[dict]:
    return await collection.aggregate(pipeline).to_list(length=None)


async def _actors(db, user_ids: list) -> dict:
    ids = [uid for uid in set(user_ids) if isinstance(uid, ObjectId)]
    if not ids:
        return {}
    users = await db.users.find(
        {"_id": {"$in": ids}}, {"username": 1, "email": 1},
    ).to_list(length=None)
    return {u["_id"]: u for u in users}


def serialize_activity(log: dict, actors: dict) -> dict:
    out = document_to_wire(log, exclude=("user_id",))
    actor = actors.get(log.get("user_id"))
    out["userId"] = {
        "id": to_wire(log.get("user_id")),
        "username": actor.get("username") if actor else None,
        "email": actor.get("email") if actor else None,
    }
    return out


async def recent_activity(db, limit: int) -> list[dict]:
    logs = await db.activity_logs.find({}).sort([("timestamp", -1), ("_id", -1)]).limit(limit).to_list(length=limit)
    actors = await _actors(db, [log.get("user_id") for log in logs])
    return [serialize_activity(log, actors) for log in logs]


async def dashboard_stats(
    db, *, recent_limit: int, growth_months: int,
) -> dict:
    total_members = await db.members.count_documents({})
    active_members = await db.members.count_documents({"status": "active"})
    inactive_members = await db.members.count_documents({"status": "inactive"})
    pending_members = await db.members.count_documents({"status": "pending"})

    admin_role = await db.roles.find_one({"name": ADMIN_ROLE}, {"_id": 1})
    user_query = {"role_id": {"$ne": admin_role["_id"]}} if admin_role else {}
    total_users = await db.users.count_documents(user_query)

    role_distribution = await _aggregate(db.members, _count_by("role", by_count=True))
    monthly_growth = await _aggregate(db.members, _month_bucket_pipeline(months_ago(growth_months)))

    return {
        "totalMembers": total_members,
        "activeMembers": active_members,
        "inactiveMembers": inactive_members,
        "pendingMembers": pending_members,
        "totalUsers": total_users,
        "recentActivities": await recent_activity(db, recent_limit),
        "roleDistribution": to_wire(role_distribution),
        "monthlyGrowth": to_wire(monthly_growth),
    }


async def member_stats(db, *, trend_months: int, top_creators: int = 5) -> dict:
    status_stats = await _aggregate(db.members, _count_by("status"))
    role_stats = await _aggregate(db.members, _count_by("role", by_count=True))
    monthly_trend = await _aggregate(db.members, _month_bucket_pipeline(months_ago(trend_months)))

    # Creators whose identity was deleted drop out before the top-N cut.
    creators = await _aggregate(db.members, [
        {"$group": {"_id": "$created_by", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ])
    actors = await _actors(db, [c["_id"] for c in creators])
    creator_stats = [
        {
            "userId": to_wire(c["_id"]),
            "username": actors[c["_id"]].get("username"),
            "count": c["count"],
        }
        for c in creators
        if c["_id"] in actors
    ][:top_creators]

    return {
        "statusStats": to_wire(status_stats),
        "roleStats": to_wire(role_stats),
        "monthlyTrend": to_wire(monthly_trend),
        "creatorStats": creator_stats,
    }


def _parse_day(raw: str, *, end_of_day: bool) -> datetime:
    try:
        day = datetime.fromisoformat(raw)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"Invalid date: {raw}")
    if day.tzinfo is None:
        day = day.replace(tzinfo=timezone.utc)
    if end_of_day and len(raw) <= 10:
        day = day + timedelta(days=1) - timedelta(microseconds=1)
    return day


def build_activity_query(
    *,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    collection_name: Optional[str] = None,
    document_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    query: dict = {}
    if user_id:
        query["user_id"] = ObjectId(user_id)
    if action:
        if action not in _VALID_ACTIONS:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, f"Invalid action: {action}")
        query["action"] = action
    if collection_name:
        if collection_name not in _VALID_COLLECTIONS:
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST, f"Invalid collection name: {collection_name}",
            )
        query["collection_name"] = collection_name
    if document_id:
        try:
            query["document_id"] = ObjectId(document_id)
        except InvalidId:
            query["document_id"] = document_id
    if start_date or end_date:
        window: dict = {}
        if start_date:
            window["$gte"] = _parse_day(start_date, end_of_day=False)
        if end_date:
            window["$lte"] = _parse_day(end_date, end_of_day=True)
        query["timestamp"] = window
    return query


async def list_activity(db, query: dict, *, skip: int, limit: int) -> tuple[list[dict], int]:
    total = await db.activity_logs.count_documents(query)
    logs = await (
        db.activity_logs.find(query)
        .sort([("timestamp", -1), ("_id", -1)])
        .skip(skip)
        .limit(limit)
        .to_list(length=limit)
    )
    actors = await _actors(db, [log.get("user_id") for log in logs])
    return [serialize_activity(log, actors) for log in logs], total
