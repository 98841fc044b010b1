"""
backend/registrack/database.py

Purpose:
    MongoDB connection handle and index management for all collections.
    The handle is created once per application, stored on ``app.state`` and
    handed to request handlers through the ``get_db`` dependency.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - registrack.config
"""

import logging
from typing import Optional

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from registrack.config import Settings, settings as default_settings

logger = logging.getLogger("registrack.database")


class Database:
    """Owns the Motor client and the database object for one application."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> None:
        self.client = AsyncIOMotorClient(
            self.config.MONGO_URI,
            maxPoolSize=25,
            minPoolSize=1,
            tz_aware=True,
        )
        self.db = self.client[self.config.MONGO_DB]
        await ensure_indexes(self.db)
        logger.info("Connected to MongoDB database %s", self.config.MONGO_DB)

    async def close(self) -> None:
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
        self.client = None
        self.db = None

    async def ping(self) -> bool:
        if self.db is None:
            return False
        try:
            result = await self.db.command("ping")
        except Exception:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False
        return result.get("ok") == 1.0


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(request: Request) -> AsyncIOMotorDatabase:
    return get_database(request).db


async def ensure_indexes(db) -> None:
    """Create indexes on startup. Idempotent; safe to run repeatedly.

    Unique indexes are the source of truth for uniqueness: handlers insert
    directly and translate ``DuplicateKeyError`` into a conflict response.
    """

    # ---- Users ----
    await db.users.create_index("email", unique=True)
    await db.users.create_index("username", unique=True)
    await db.users.create_index("role_id")

    # ---- Roles ----
    await db.roles.create_index("name", unique=True)

    # ---- Members ----
    await db.members.create_index("email", unique=True)
    await db.members.create_index("status")
    await db.members.create_index("role")
    await db.members.create_index([("created_at", DESCENDING)])

    # ---- Activity logs (insert-only) ----
    await db.activity_logs.create_index([("collection_name", ASCENDING), ("document_id", ASCENDING)])
    await db.activity_logs.create_index("user_id")
    await db.activity_logs.create_index([("timestamp", DESCENDING)])

    # ---- Revoked access tokens (expire with the token) ----
    await db.access_blocklist.create_index("jti", unique=True)
    await db.access_blocklist.create_index("expires_at", expireAfterSeconds=0)
