"""
backend/tests/test_member_service.py

Purpose:
    Member store operations: uniqueness, listing, field-level update diffs,
    delete snapshots and profile picture uploads.
"""

from __future__ import annotations

import io
from datetime import date, timedelta
from pathlib import Path

import pytest
from bson import ObjectId
from fastapi import HTTPException, UploadFile
from pydantic import ValidationError
from starlette.datastructures import Headers

from registrack.models.member import MemberCreate, MemberUpdate
from registrack.services import member_service
from registrack.services.member_service import (
    create_member,
    delete_member,
    get_member,
    list_members,
    save_profile_picture,
    serialize_member,
    update_member,
)
from registrack.utils import page_count

ACTOR = ObjectId()


def _member(**overrides) -> MemberCreate:
    data = {
        "firstName": "Ann",
        "lastName": "Lee",
        "email": "ann@example.com",
        "dateOfBirth": "1990-05-01",
        "role": "volunteer",
    }
    data.update(overrides)
    return MemberCreate(**data)


def _upload(filename: str, content: bytes, content_type: str) -> UploadFile:
    return UploadFile(
        file=io.BytesIO(content),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


def test_member_payload_rules():
    with pytest.raises(ValidationError):
        _member(dateOfBirth=(date.today() + timedelta(days=2)).isoformat())
    with pytest.raises(ValidationError):
        _member(status="archived")
    with pytest.raises(ValidationError):
        _member(email="not-an-email")

    member = _member(email="ANN@Example.com")
    assert member.email == "ann@example.com"
    assert member.status == "active"


@pytest.mark.asyncio
async def test_create_sets_creator_and_audits_full_payload(fake_db):
    doc, entry = await create_member(fake_db, _member(), ACTOR)

    stored = await get_member(fake_db, str(doc["_id"]))
    assert stored["created_by"] == ACTOR
    assert stored["date_of_birth"].date() == date(1990, 5, 1)
    assert entry.action.value == "create"
    assert entry.document_id == str(doc["_id"])
    assert entry.changes["firstName"] == "Ann"
    assert entry.changes["dateOfBirth"] == "1990-05-01"


@pytest.mark.asyncio
async def test_duplicate_email_is_a_conflict_and_not_stored(fake_db):
    await create_member(fake_db, _member(), ACTOR)

    with pytest.raises(HTTPException) as exc:
        await create_member(fake_db, _member(firstName="Other"), ACTOR)

    assert exc.value.status_code == 409
    assert await fake_db.members.count_documents({}) == 1


@pytest.mark.asyncio
async def test_list_paginates_25_members(fake_db):
    for i in range(25):
        await create_member(fake_db, _member(email=f"m{i}@example.com", firstName=f"M{i:02d}"), ACTOR)

    page_two, total = await list_members(fake_db, skip=10, limit=10)
    page_three, _ = await list_members(fake_db, skip=20, limit=10)

    assert total == 25
    assert page_count(total, 10) == 3
    assert len(page_two) == 10
    assert len(page_three) == 5
    seen = {m["_id"] for m in page_two} | {m["_id"] for m in page_three}
    assert len(seen) == 15


@pytest.mark.asyncio
async def test_list_search_filter_and_sort(fake_db):
    await create_member(fake_db, _member(email="zed@example.com", firstName="Zed", phone="555-0100"), ACTOR)
    await create_member(fake_db, _member(email="amy@example.com", firstName="Amy", status="pending"), ACTOR)
    await create_member(fake_db, _member(email="bob@example.com", firstName="Bob", role="coach"), ACTOR)

    found, total = await list_members(fake_db, skip=0, limit=10, search="ZED")
    assert total == 1 and found[0]["first_name"] == "Zed"

    by_phone, _ = await list_members(fake_db, skip=0, limit=10, search="555-01")
    assert [m["first_name"] for m in by_phone] == ["Zed"]

    # User input is matched literally, not as a pattern.
    literal, _ = await list_members(fake_db, skip=0, limit=10, search="a.y")
    assert literal == []

    pending, _ = await list_members(fake_db, skip=0, limit=10, status_filter="pending")
    assert [m["first_name"] for m in pending] == ["Amy"]

    coaches, _ = await list_members(fake_db, skip=0, limit=10, role="coach")
    assert [m["first_name"] for m in coaches] == ["Bob"]

    by_name, _ = await list_members(fake_db, skip=0, limit=10, sort_by="firstName", sort_order="asc")
    assert [m["first_name"] for m in by_name] == ["Amy", "Bob", "Zed"]

    newest_first, _ = await list_members(fake_db, skip=0, limit=10)
    assert [m["first_name"] for m in newest_first] == ["Bob", "Amy", "Zed"]


@pytest.mark.asyncio
async def test_status_change_yields_single_field_diff(fake_db):
    doc, _ = await create_member(fake_db, _member(), ACTOR)

    member, entry = await update_member(
        fake_db, str(doc["_id"]), MemberUpdate(status="inactive", firstName="Ann"),
    )

    assert member["status"] == "inactive"
    assert entry.action.value == "update"
    assert entry.changes == {"status": {"from": "active", "to": "inactive"}}


@pytest.mark.asyncio
async def test_notes_only_update_is_not_audited(fake_db):
    doc, _ = await create_member(fake_db, _member(), ACTOR)

    member, entry = await update_member(fake_db, str(doc["_id"]), MemberUpdate(notes="call back"))

    assert member["notes"] == "call back"
    assert entry is None


@pytest.mark.asyncio
async def test_update_to_taken_email_is_a_conflict(fake_db):
    await create_member(fake_db, _member(email="taken@example.com"), ACTOR)
    doc, _ = await create_member(fake_db, _member(), ACTOR)

    with pytest.raises(HTTPException) as exc:
        await update_member(fake_db, str(doc["_id"]), MemberUpdate(email="taken@example.com"))

    assert exc.value.status_code == 409
    assert (await get_member(fake_db, str(doc["_id"])))["email"] == "ann@example.com"


@pytest.mark.asyncio
async def test_missing_member_is_not_found(fake_db):
    with pytest.raises(HTTPException) as exc:
        await get_member(fake_db, str(ObjectId()))
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_delete_records_snapshot_before_removing(fake_db):
    doc, _ = await create_member(fake_db, _member(), ACTOR)
    recorded = []

    async def _record(entry):
        # The member must still exist while the snapshot is taken.
        recorded.append((entry, await fake_db.members.count_documents({"_id": doc["_id"]})))
        return True

    await delete_member(fake_db, str(doc["_id"]), _record)

    entry, count_at_record_time = recorded[0]
    assert count_at_record_time == 1
    assert entry.action.value == "delete"
    assert entry.changes["email"] == "ann@example.com"
    assert entry.changes["firstName"] == "Ann"
    assert await fake_db.members.count_documents({}) == 0


@pytest.mark.asyncio
async def test_delete_proceeds_when_snapshot_write_fails(fake_db):
    doc, _ = await create_member(fake_db, _member(), ACTOR)

    async def _failed_record(entry):
        return False

    await delete_member(fake_db, str(doc["_id"]), _failed_record)
    assert await fake_db.members.count_documents({}) == 0


@pytest.mark.asyncio
async def test_profile_picture_upload_replaces_reference(fake_db, tmp_path):
    doc, _ = await create_member(fake_db, _member(), ACTOR)
    member_id = str(doc["_id"])

    first, _ = await save_profile_picture(
        fake_db, member_id, _upload("me.png", b"\x89PNG one", "image/png"),
        upload_dir=str(tmp_path), max_bytes=1024,
    )
    second, entry = await save_profile_picture(
        fake_db, member_id, _upload("me.webp", b"RIFF two", "image/webp"),
        upload_dir=str(tmp_path), max_bytes=1024,
    )

    assert second.startswith(member_service.PROFILE_PICTURE_URL_PREFIX + "profile-")
    assert second.endswith(".webp")
    assert entry.changes == {"profilePicture": {"from": first, "to": second}}
    assert (await get_member(fake_db, member_id))["profile_picture"] == second
    # The previous file stays on disk.
    stored = sorted(p.name for p in (Path(tmp_path) / "profile-pictures").iterdir())
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_profile_picture_upload_rejections(fake_db, tmp_path):
    doc, _ = await create_member(fake_db, _member(), ACTOR)
    member_id = str(doc["_id"])

    async def _reject(upload, max_bytes=1024):
        with pytest.raises(HTTPException) as exc:
            await save_profile_picture(fake_db, member_id, upload, upload_dir=str(tmp_path), max_bytes=max_bytes)
        assert exc.value.status_code == 400
        return exc.value.detail

    assert await _reject(None) == "Please upload a file"
    assert await _reject(_upload("doc.pdf", b"%PDF", "application/pdf")) == (
        "Only images (jpg, jpeg, png, webp) are allowed"
    )
    assert await _reject(_upload("fake.png", b"text", "text/plain")) == (
        "Only images (jpg, jpeg, png, webp) are allowed"
    )
    too_big = await _reject(_upload("big.jpg", b"x" * (2 * 1024 * 1024 + 1), "image/jpeg"), max_bytes=2 * 1024 * 1024)
    assert too_big == "File size too large. Max 2MB allowed."
    assert (await get_member(fake_db, member_id))["profile_picture"] == ""


def test_serialize_member_uses_wire_names():
    member_id, creator = ObjectId(), ObjectId()
    out = serialize_member(
        {
            "_id": member_id,
            "first_name": "Ann",
            "last_name": "Lee",
            "postal_code": "10115",
            "created_by": creator,
        },
        {creator: "admin"},
    )
    assert out["id"] == str(member_id)
    assert out["postalCode"] == "10115"
    assert out["fullName"] == "Ann Lee"
    assert out["createdBy"] == {"id": str(creator), "username": "admin"}
