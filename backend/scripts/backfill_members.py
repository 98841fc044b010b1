"""
backend/scripts/backfill_members.py

Purpose:
    Idempotent migration helper for identities registered before registration
    created a member record. Every user without a member of the same email
    gets one, attributed to that user.

Usage:
    cd backend && python -m scripts.backfill_members
"""

from __future__ import annotations

import asyncio

from pymongo.errors import DuplicateKeyError

from registrack.database import Database
from registrack.services.member_service import create_member_for_user

FALLBACK_ROLE = "member"


async def backfill_members(db) -> dict:
    roles = await db.roles.find({}, {"name": 1}).to_list(length=None)
    role_names = {r["_id"]: r["name"] for r in roles}
    users = await db.users.find({}, {"hashed_password": 0}).to_list(length=None)

    created = skipped = 0
    for user in users:
        if await db.members.find_one({"email": user["email"]}):
            skipped += 1
            continue
        try:
            await create_member_for_user(db, user, role_names.get(user.get("role_id"), FALLBACK_ROLE))
        except DuplicateKeyError:
            skipped += 1
            continue
        created += 1

    return {"users": len(users), "members_created": created, "skipped": skipped}


async def run() -> None:
    database = Database()
    await database.connect()
    try:
        print(await backfill_members(database.db))
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(run())
