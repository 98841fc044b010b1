"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: test environment variables, import paths and
    fixtures for an application wired to the in-memory fake database.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from types import SimpleNamespace

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_TESTS_DIR = _THIS_FILE.parent

for candidate in (str(_BACKEND_DIR), str(_TESTS_DIR)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

# Must be set before registrack.config is imported.
os.environ.setdefault("JWT_SECRET", "test-secret-do-not-use-in-production")
os.environ["ENVIRONMENT"] = "test"
os.environ["SEED_ADMIN_EMAIL"] = ""
os.environ["SEED_ADMIN_PASSWORD"] = ""

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from fakes import FakeDatabaseHandle  # noqa: E402
from registrack.config import settings  # noqa: E402
from registrack.main import create_app  # noqa: E402
from registrack.services.role_service import seed_default_roles  # noqa: E402


@pytest.fixture(autouse=True)
def _upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))


@pytest_asyncio.fixture
async def fake_db():
    handle = FakeDatabaseHandle()
    await handle.connect()
    await seed_default_roles(handle.db)
    return handle.db


@pytest_asyncio.fixture
async def api(fake_db):
    """Application over the fake database plus an httpx client bound to it.

    The lifespan is not run; the handle is already connected and seeded.
    """
    handle = FakeDatabaseHandle()
    handle.db = fake_db
    app = create_app(handle, fatal_handlers=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield SimpleNamespace(app=app, db=fake_db, client=client)
