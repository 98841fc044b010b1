import math
import re
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_positive_int(raw: Optional[str], default: int) -> int:
    """Parse a query-string integer, falling back to ``default`` when missing or invalid.

    Values below 1 are clamped to 1.
    """
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return max(1, value)


# Largest skip MongoDB accepts (BSON int64).
MAX_SKIP = 2**63 - 1


def resolve_pagination(
    page: Optional[str], limit: Optional[str], *, default_limit: int, max_limit: int,
) -> tuple[int, int, int]:
    """Return ``(page, limit, skip)`` for offset pagination.

    ``page`` is clamped so that ``skip`` stays within MAX_SKIP.
    """
    page_size = min(parse_positive_int(limit, default_limit), max_limit)
    page_num = min(parse_positive_int(page, 1), MAX_SKIP // page_size + 1)
    return page_num, page_size, (page_num - 1) * page_size


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def search_regex(term: str) -> dict:
    """Case-insensitive substring match on user input (escaped, never a raw regex)."""
    return {"$regex": re.escape(term.strip()), "$options": "i"}
