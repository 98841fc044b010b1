"""
backend/registrack/models/common.py

Purpose:
    Shared Pydantic V2 model helpers: the camelCase wire convention used by
    every request body, and document serialization helpers for Mongo-backed
    responses.

Dependencies:
    - bson.ObjectId
    - pydantic.alias_generators
"""

from datetime import date, datetime, time, timezone
from typing import Any

from bson import ObjectId
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from registrack.utils import ensure_utc


class CamelModel(BaseModel):
    """Request body base: camelCase on the wire, snake_case in Python and MongoDB."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def date_to_datetime(value: date) -> datetime:
    """MongoDB has no date type; store calendar dates as UTC midnight."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def to_wire(value: Any) -> Any:
    """Convert stored values (ObjectId, datetime, nested docs) into JSON-ready values."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_wire(v) for v in value]
    return value


def document_to_wire(doc: dict, *, exclude: tuple[str, ...] = ()) -> dict:
    """Render a stored document with ``id`` instead of ``_id`` and camelCase keys."""
    out: dict = {"id": str(doc["_id"])} if "_id" in doc else {}
    for key, value in doc.items():
        if key == "_id" or key in exclude:
            continue
        out[to_camel(key)] = to_wire(value)
    return out
