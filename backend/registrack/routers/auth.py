import logging

from fastapi import APIRouter, Depends, Request, status

from registrack.database import get_db
from registrack.models.audit import ActivityAction, ActivityEntry, AuditedCollection
from registrack.models.user import LoginRequest, RegisterRequest
from registrack.services.auth_service import (
    authenticate,
    create_access_token,
    get_current_user,
    revoke_token,
)
from registrack.services.user_service import register_user, serialize_user

logger = logging.getLogger("registrack.auth")
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_activity(action: ActivityAction, user: dict) -> ActivityEntry:
    return ActivityEntry(
        action=action,
        collection_name=AuditedCollection.USER,
        document_id=str(user["_id"]),
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, db=Depends(get_db)):
    """Register a new identity and its member record. Not audited: there is no authenticated actor yet."""
    user = await register_user(
        db,
        username=body.username,
        email=body.email,
        password=body.password,
        role_name=body.role,
    )
    token = create_access_token(user)
    return {
        "success": True,
        "token": token,
        "user": serialize_user(user, include_permissions=False),
    }


@router.post("/login")
async def login(body: LoginRequest, request: Request, db=Depends(get_db)):
    """Login with email (or username) and password."""
    user, token = await authenticate(db, body.email, body.password)

    # The request started anonymous; expose the identity to the activity logger.
    request.state.user = user
    request.state.activity = _user_activity(ActivityAction.LOGIN, user)
    return {
        "success": True,
        "token": token,
        "user": serialize_user(user, include_permissions=False),
    }


@router.get("/me")
async def get_me(user=Depends(get_current_user)):
    """Get the current identity with its role and permissions."""
    return {"success": True, "data": serialize_user(user)}


@router.post("/refresh-token")
async def refresh_token(request: Request, user=Depends(get_current_user)):
    """Issue a fresh token for the current identity."""
    request.state.activity = None
    return {"success": True, "token": create_access_token(user)}


@router.post("/logout")
async def logout(request: Request, user=Depends(get_current_user), db=Depends(get_db)):
    """Revoke the presented token."""
    await revoke_token(db, request.state.token_claims)
    request.state.activity = _user_activity(ActivityAction.LOGOUT, user)
    logger.info("User logged out: %s", user["_id"])
    return {"success": True, "message": "Logged out successfully"}
