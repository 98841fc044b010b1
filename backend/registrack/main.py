"""
backend/registrack/main.py

Purpose:
    FastAPI application bootstrap: middleware/router wiring, exception
    handlers, the database lifecycle and startup seeding of the built-in
    roles and the admin identity.

Dependencies:
    - registrack.database
    - registrack.middleware
    - registrack.services.role_service
    - registrack.seed
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from registrack.config import settings
from registrack.database import Database
from registrack.errors import register_exception_handlers
from registrack.middleware.activity_logger import ActivityLoggerMiddleware
from registrack.middleware.logging import (
    StructuredLoggingMiddleware,
    install_fatal_handlers,
    setup_logging,
)
from registrack.routers.auth import router as auth_router
from registrack.routers.dashboard import router as dashboard_router
from registrack.routers.members import router as members_router
from registrack.routers.roles import router as roles_router
from registrack.routers.users import router as users_router
from registrack.seed import seed_initial_admin
from registrack.services.audit_service import AuditDispatcher
from registrack.services.role_service import seed_default_roles
from registrack.utils import utcnow

logger = logging.getLogger("registrack")

# Outstanding activity writes get this long to finish on shutdown.
AUDIT_DRAIN_TIMEOUT_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if app.state.fatal_handlers:
        install_fatal_handlers(asyncio.get_running_loop())

    database: Database = app.state.database
    await database.connect()

    roles_result = await seed_default_roles(database.db)
    logger.info("Default roles seeded on startup: %s", roles_result)
    await seed_initial_admin(database.db)

    yield

    await app.state.audit_dispatcher.drain(timeout=AUDIT_DRAIN_TIMEOUT_SECONDS)
    await database.close()


def create_app(database: Optional[Database] = None, *, fatal_handlers: bool = True) -> FastAPI:
    app = FastAPI(
        title="Registrack",
        description="Membership registry with role-based access and activity audit trail",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.database = database or Database()
    app.state.audit_dispatcher = AuditDispatcher()
    app.state.fatal_handlers = fatal_handlers

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Activity audit trail
    app.add_middleware(
        ActivityLoggerMiddleware,
        dispatcher=app.state.audit_dispatcher,
        truncate_ip=settings.AUDIT_TRUNCATE_IP,
    )

    # Structured logging
    app.add_middleware(StructuredLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(members_router)
    app.include_router(users_router)
    app.include_router(roles_router)
    app.include_router(dashboard_router)

    app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")

    @app.get("/health")
    async def health(request: Request):
        """Health check -- verifies the DB connection."""
        db_ok = await request.app.state.database.ping()
        return {
            "status": "ok" if db_ok else "degraded",
            "database": db_ok,
            "timestamp": utcnow().isoformat(),
        }

    return app


app = create_app()
