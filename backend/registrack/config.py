"""
backend/registrack/config.py

Purpose:
    Central settings loading for the membership backend.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "registrack"
    JWT_SECRET: str
    JWT_SECRET_OLD: str = ""  # Set during rotation; cleared after ACCESS_TOKEN_EXPIRE_DAYS
    BACKEND_CORS_ORIGINS: str = "http://localhost:4200,http://localhost:5173"

    # "development" exposes stack traces in error responses
    ENVIRONMENT: str = "development"

    # JWT settings
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7

    # Profile picture uploads
    UPLOAD_DIR: str = str(Path(__file__).resolve().parent.parent.parent / "uploads")
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024

    # Activity logs: store "192.168.1.xxx" instead of the full client address
    AUDIT_TRUNCATE_IP: bool = False

    # List endpoints
    DEFAULT_PAGE_LIMIT: int = 10
    MAX_PAGE_LIMIT: int = 100
    ACTIVITY_LOG_PAGE_LIMIT: int = 20

    # Dashboard aggregation windows
    DASHBOARD_RECENT_ACTIVITY_LIMIT: int = 10
    DASHBOARD_GROWTH_MONTHS: int = 6
    MEMBER_TREND_MONTHS: int = 12

    # Seed admin user (leave empty to skip seeding)
    SEED_ADMIN_USERNAME: str = "admin"
    SEED_ADMIN_EMAIL: str = ""
    SEED_ADMIN_PASSWORD: str = ""

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


settings = Settings()
