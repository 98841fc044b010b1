"""
backend/tests/test_api_flow.py

Purpose:
    End-to-end flows through the full application (auth, authorization,
    member handlers, activity logger and dashboard) over the fake database.
"""

from __future__ import annotations

import pytest
from bson import ObjectId

from fakes import bearer, register

MEMBER = {
    "firstName": "Ann",
    "lastName": "Lee",
    "email": "ann@example.com",
    "dateOfBirth": "1990-05-01",
    "role": "volunteer",
    "phone": "555-0100",
}


async def _admin_token(client) -> str:
    await register(client, "root", "root@example.com", role="admin")
    response = await client.post("/api/auth/login", json={"email": "root@example.com", "password": "password123"})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.mark.asyncio
async def test_member_lifecycle_is_audited_newest_first(api):
    client = api.client
    token = await _admin_token(client)

    created = await client.post("/api/members", json=MEMBER, headers=bearer(token))
    assert created.status_code == 201
    member = created.json()["data"]
    member_id = member["id"]
    assert member["createdBy"]["username"] == "root"

    fetched = await client.get(f"/api/members/{member_id}", headers=bearer(token))
    assert fetched.status_code == 200
    assert fetched.json()["data"]["email"] == "ann@example.com"
    assert fetched.json()["data"]["dateOfBirth"] == "1990-05-01"

    updated = await client.put(f"/api/members/{member_id}", json={"status": "inactive"}, headers=bearer(token))
    assert updated.status_code == 200
    assert updated.json()["data"]["status"] == "inactive"

    await api.app.state.audit_dispatcher.drain(timeout=1)

    logs = await client.get(
        "/api/dashboard/activity-logs", params={"documentId": member_id}, headers=bearer(token),
    )
    assert logs.status_code == 200
    body = logs.json()
    assert body["total"] == 2
    assert [entry["action"] for entry in body["data"]] == ["update", "create"]
    assert body["data"][0]["changes"] == {"status": {"from": "active", "to": "inactive"}}
    assert body["data"][1]["changes"]["email"] == "ann@example.com"
    assert body["data"][0]["userId"]["username"] == "root"


@pytest.mark.asyncio
async def test_login_and_logout_are_audited_refresh_is_not(api):
    client = api.client
    token = await _admin_token(client)

    refreshed = await client.post("/api/auth/refresh-token", headers=bearer(token))
    assert refreshed.status_code == 200
    new_token = refreshed.json()["token"]
    assert (await client.get("/api/auth/me", headers=bearer(new_token))).status_code == 200

    logout = await client.post("/api/auth/logout", headers=bearer(token))
    assert logout.status_code == 200

    revoked = await client.get("/api/auth/me", headers=bearer(token))
    assert revoked.status_code == 401
    assert revoked.json()["message"] == "Token has been revoked"

    await api.app.state.audit_dispatcher.drain(timeout=1)
    actions = sorted(doc["action"] for doc in api.db.activity_logs.docs)
    assert actions == ["login", "logout"]
    assert {doc["collection_name"] for doc in api.db.activity_logs.docs} == {"User"}


@pytest.mark.asyncio
async def test_register_rules(api):
    client = api.client
    body = await register(client, "Alice", "alice@example.com")
    assert body["user"]["username"] == "alice"
    assert body["user"]["role"]["name"] == "user"
    assert "hashedPassword" not in body["user"]

    duplicate = await client.post(
        "/api/auth/register",
        json={"username": "alice2", "email": "alice@example.com", "password": "password123"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "User with this email or username already exists"

    bad_role = await client.post(
        "/api/auth/register",
        json={"username": "bob", "email": "bob@example.com", "password": "password123", "role": "wizard"},
    )
    assert bad_role.status_code == 400
    assert bad_role.json()["message"] == "Invalid role"

    short = await client.post(
        "/api/auth/register",
        json={"username": "carl", "email": "carl@example.com", "password": "short"},
    )
    assert short.status_code == 400
    assert short.json()["message"].startswith("Validation Error")

    # Registration has no authenticated actor and is not audited.
    await api.app.state.audit_dispatcher.drain(timeout=1)
    assert api.db.activity_logs.docs == []


@pytest.mark.asyncio
async def test_register_creates_member_record(api):
    body = await register(api.client, "Mary Jane Watson", "mj@example.com")

    member = await api.db.members.find_one({"email": "mj@example.com"})
    assert member is not None
    assert (member["first_name"], member["last_name"]) == ("mary", "jane watson")
    assert member["role"] == "user"
    assert member["status"] == "active"
    assert member["created_by"] == ObjectId(body["user"]["id"])

    single = await register(api.client, "solo", "solo@example.com")
    solo = await api.db.members.find_one({"created_by": ObjectId(single["user"]["id"])})
    assert (solo["first_name"], solo["last_name"]) == ("solo", "User")


@pytest.mark.asyncio
async def test_register_rolls_back_when_member_email_taken(api):
    client = api.client
    token = await _admin_token(client)
    assert (await client.post("/api/members", json=MEMBER, headers=bearer(token))).status_code == 201

    response = await client.post(
        "/api/auth/register",
        json={"username": "ann", "email": MEMBER["email"], "password": "password123"},
    )

    assert response.status_code == 409
    assert response.json()["message"] == "Email already exists as a member"
    assert await api.db.users.count_documents({"email": MEMBER["email"]}) == 0
    assert await api.db.members.count_documents({"email": MEMBER["email"]}) == 1


@pytest.mark.asyncio
async def test_login_failures(api):
    client = api.client
    await register(client, "alice", "alice@example.com")

    wrong = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope-nope"})
    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid credentials"

    await api.db.users.update_one({"username": "alice"}, {"$set": {"is_active": False}})
    inactive = await client.post("/api/auth/login", json={"email": "alice", "password": "password123"})
    assert inactive.status_code == 401
    assert inactive.json()["message"] == "Account is deactivated. Please contact support."


@pytest.mark.asyncio
async def test_non_admin_cannot_create_members_but_can_read(api):
    client = api.client
    admin = await _admin_token(client)
    user = (await register(client, "staff", "staff@example.com"))["token"]

    denied = await client.post("/api/members", json=MEMBER, headers=bearer(user))
    assert denied.status_code == 403
    assert denied.json()["message"] == "User role user is not authorized to access this route"
    assert await api.db.members.count_documents({"email": MEMBER["email"]}) == 0

    await client.post("/api/members", json=MEMBER, headers=bearer(admin))
    listing = await client.get("/api/members", headers=bearer(user))
    assert listing.status_code == 200
    # root and staff got member records at registration.
    assert listing.json()["total"] == 3

    dashboard = await client.get("/api/dashboard/stats", headers=bearer(user))
    assert dashboard.status_code == 403


@pytest.mark.asyncio
async def test_member_conflict_and_pagination(api):
    client = api.client
    token = await _admin_token(client)

    assert (await client.post("/api/members", json=MEMBER, headers=bearer(token))).status_code == 201
    conflict = await client.post("/api/members", json=MEMBER, headers=bearer(token))
    assert conflict.status_code == 409
    assert conflict.json()["message"] == "Member with this email already exists"

    # The admin's own member record from registration makes 25.
    for i in range(23):
        payload = {**MEMBER, "email": f"member{i}@example.com"}
        assert (await client.post("/api/members", json=payload, headers=bearer(token))).status_code == 201

    page_two = (await client.get("/api/members", params={"page": 2, "limit": 10}, headers=bearer(token))).json()
    page_three = (await client.get("/api/members", params={"page": 3, "limit": 10}, headers=bearer(token))).json()
    assert (page_two["count"], page_two["total"], page_two["pages"], page_two["page"]) == (10, 25, 3, 2)
    assert page_three["count"] == 5

    clamped = (await client.get("/api/members", params={"page": "0", "limit": "abc"}, headers=bearer(token))).json()
    assert (clamped["page"], clamped["count"]) == (1, 10)


@pytest.mark.asyncio
async def test_notes_only_update_and_delete(api):
    client = api.client
    token = await _admin_token(client)
    member_id = (await client.post("/api/members", json=MEMBER, headers=bearer(token))).json()["data"]["id"]

    notes = await client.patch(f"/api/members/{member_id}", json={"notes": "prefers email"}, headers=bearer(token))
    assert notes.status_code == 200

    deleted = await client.delete(f"/api/members/{member_id}", headers=bearer(token))
    assert deleted.status_code == 200

    gone = await client.get(f"/api/members/{member_id}", headers=bearer(token))
    assert gone.status_code == 404
    assert gone.json()["message"] == "Member not found"
    listing = (await client.get("/api/members", headers=bearer(token))).json()
    assert listing["total"] == 1

    await api.app.state.audit_dispatcher.drain(timeout=1)
    member_logs = [d for d in api.db.activity_logs.docs if d["document_id"] == ObjectId(member_id)]
    assert sorted(d["action"] for d in member_logs) == ["create", "delete"]
    snapshot = next(d for d in member_logs if d["action"] == "delete")["changes"]
    assert snapshot["email"] == "ann@example.com"
    assert snapshot["notes"] == "prefers email"


@pytest.mark.asyncio
async def test_audit_store_outage_does_not_change_responses(api):
    client = api.client
    token = await _admin_token(client)
    api.db.activity_logs.insert_error = RuntimeError("audit store down")

    created = await client.post("/api/members", json=MEMBER, headers=bearer(token))
    member_id = created.json()["data"]["id"]
    updated = await client.put(f"/api/members/{member_id}", json={"status": "pending"}, headers=bearer(token))
    deleted = await client.delete(f"/api/members/{member_id}", headers=bearer(token))
    await api.app.state.audit_dispatcher.drain(timeout=1)

    assert (created.status_code, updated.status_code, deleted.status_code) == (201, 200, 200)
    assert await api.db.members.count_documents({"email": MEMBER["email"]}) == 0


@pytest.mark.asyncio
async def test_profile_picture_upload_endpoint(api):
    client = api.client
    token = await _admin_token(client)
    member_id = (await client.post("/api/members", json=MEMBER, headers=bearer(token))).json()["data"]["id"]

    uploaded = await client.post(
        f"/api/members/{member_id}/upload",
        files={"profilePicture": ("face.png", b"\x89PNG\r\n\x1a\n", "image/png")},
        headers=bearer(token),
    )
    assert uploaded.status_code == 200
    ref = uploaded.json()["data"]["profilePicture"]
    assert ref.startswith("/uploads/profile-pictures/profile-")

    served = await client.get(ref)
    assert served.status_code == 200
    assert served.content == b"\x89PNG\r\n\x1a\n"

    missing = await client.post(f"/api/members/{member_id}/upload", headers=bearer(token))
    assert missing.status_code == 400
    assert missing.json()["message"] == "Please upload a file"

    await api.app.state.audit_dispatcher.drain(timeout=1)
    upload_log = [d for d in api.db.activity_logs.docs if "profilePicture" in (d.get("changes") or {})]
    assert len(upload_log) == 1
    assert upload_log[0]["changes"]["profilePicture"] == {"from": "", "to": ref}
