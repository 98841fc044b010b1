from typing import Optional

from pydantic import ConfigDict, EmailStr, Field, field_validator

from registrack.models.common import CamelModel
from registrack.models.role import DEFAULT_ROLE


def _username_rules(v: str) -> str:
    v = v.strip().lower()
    if len(v) < 3:
        raise ValueError("Username must be at least 3 characters long.")
    return v


class RegisterRequest(CamelModel):
    """Request body for registration."""
    model_config = ConfigDict(str_strip_whitespace=False)

    username: str
    email: EmailStr
    password: str = Field(min_length=8)
    role: str = DEFAULT_ROLE

    @field_validator("username")
    @classmethod
    def normalize_username(cls, v: str) -> str:
        return _username_rules(v)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v: str) -> str:
        return v.strip().lower()


class LoginRequest(CamelModel):
    """Request body for login. ``email`` also accepts a username."""
    model_config = ConfigDict(str_strip_whitespace=False)

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_identifier(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Email or username is required.")
        return v


class UserUpdate(CamelModel):
    """Admin update of another identity. ``role`` is a role name."""
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def normalize_username(cls, v: Optional[str]) -> Optional[str]:
        return _username_rules(v) if v is not None else v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v is not None else v

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v is not None else v
