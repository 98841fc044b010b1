from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from registrack.utils import utcnow


class ActivityAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"


class AuditedCollection(str, Enum):
    USER = "User"
    MEMBER = "Member"
    ROLE = "Role"


class ActivityEntry(BaseModel):
    """What a request changed. The actor and client details are added at write time."""

    action: ActivityAction
    collection_name: AuditedCollection
    document_id: str
    changes: Optional[dict[str, Any]] = None


class ActivityLog(ActivityEntry):
    """Immutable activity log entry as stored in ``activity_logs``.

    Insert-only. No updates or deletes permitted on this collection.
    """

    user_id: str  # Who did it?
    ip_address: str = ""
    user_agent: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
