from datetime import date
from typing import Literal, Optional

from pydantic import EmailStr, field_validator

from registrack.models.common import CamelModel
from registrack.utils import utcnow

MemberStatus = Literal["active", "inactive", "pending"]

# Fields whose changes are written to the activity log on update. Everything
# else (notes, timestamps, createdBy) is ignored by the diff.
AUDITED_MEMBER_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "postal_code",
    "country",
    "date_of_birth",
    "gender",
    "status",
    "role",
)

SORTABLE_MEMBER_FIELDS: dict[str, str] = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "status": "status",
    "role": "role",
    "dateOfBirth": "date_of_birth",
}


def _not_in_future(v: Optional[date]) -> Optional[date]:
    if v is not None and v > utcnow().date():
        raise ValueError("Date of birth cannot be in the future.")
    return v


class MemberCreate(CamelModel):
    """Request body for creating a member."""
    first_name: str
    last_name: str
    email: EmailStr
    date_of_birth: date
    role: str
    status: MemberStatus = "active"
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    gender: str = ""
    notes: str = ""

    @field_validator("first_name", "last_name", "role")
    @classmethod
    def required_text(cls, v: str) -> str:
        if not v:
            raise ValueError("Field is required.")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("date_of_birth")
    @classmethod
    def birth_date_in_past(cls, v: date) -> date:
        return _not_in_future(v)


class MemberUpdate(CamelModel):
    """Partial update; only fields present in the body are applied."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    date_of_birth: Optional[date] = None
    role: Optional[str] = None
    status: Optional[MemberStatus] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("first_name", "last_name", "role")
    @classmethod
    def required_text(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v:
            raise ValueError("Field cannot be empty.")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v is not None else v

    @field_validator("date_of_birth")
    @classmethod
    def birth_date_in_past(cls, v: Optional[date]) -> Optional[date]:
        return _not_in_future(v)
