from typing import Optional

from pydantic import field_validator

from registrack.models.common import CamelModel

# Role name -> permission strings created on first start.
DEFAULT_ROLES: dict[str, list[str]] = {
    "admin": [
        "users:read",
        "users:create",
        "users:update",
        "users:delete",
        "members:read",
        "members:create",
        "members:update",
        "members:delete",
        "dashboard:view",
    ],
    "user": ["members:read", "members:create", "members:update"],
}

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "user"


def _clean_permissions(values: list[str]) -> list[str]:
    # Permissions are a set; keep first-seen order for stable output.
    seen: dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


class RoleCreate(CamelModel):
    name: str
    description: str = ""
    permissions: list[str] = []
    is_default: bool = False

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Role name is required.")
        return v

    @field_validator("permissions")
    @classmethod
    def unique_permissions(cls, v: list[str]) -> list[str]:
        return _clean_permissions(v)


class RoleUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[list[str]] = None
    is_default: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if not v:
            raise ValueError("Role name is required.")
        return v

    @field_validator("permissions")
    @classmethod
    def unique_permissions(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _clean_permissions(v) if v is not None else v
