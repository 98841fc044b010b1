import logging

from registrack.config import settings
from registrack.models.role import ADMIN_ROLE
from registrack.services.user_service import create_user

logger = logging.getLogger("registrack.seed")


async def seed_initial_admin(db) -> None:
    """Create the seed admin identity if configured via env and no identity exists yet."""
    if not settings.SEED_ADMIN_EMAIL or not settings.SEED_ADMIN_PASSWORD:
        logger.debug("SEED_ADMIN_EMAIL not set, skipping seed")
        return
    existing_users = await db.users.count_documents({})
    if existing_users > 0:
        logger.info("Seed bootstrap skipped (existing users=%d)", existing_users)
        return

    user = await create_user(
        db,
        username=settings.SEED_ADMIN_USERNAME.strip().lower(),
        email=settings.SEED_ADMIN_EMAIL.strip().lower(),
        password=settings.SEED_ADMIN_PASSWORD,
        role_name=ADMIN_ROLE,
    )
    logger.info("Seed user created (admin): %s", user["_id"])
