import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError as JWTError
from pymongo.errors import DuplicateKeyError

from registrack.config import settings
from registrack.database import get_db
from registrack.models.role import ADMIN_ROLE
from registrack.utils import utcnow

logger = logging.getLogger("registrack.auth")
ph = PasswordHasher()
bearer_scheme = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"


class AuthError(HTTPException):
    """401 with a machine-readable reason.

    Reasons: no_token, invalid_credentials, account_deactivated,
    invalid_token, expired, user_not_found.
    """

    def __init__(self, reason: str, message: str):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)
        self.reason = reason


def decode_jwt(token: str) -> dict:
    """Decode a JWT, trying the current secret first, then the old one.

    This allows zero-downtime rotation of JWT_SECRET:
    1. Set JWT_SECRET to the new value and JWT_SECRET_OLD to the previous one.
    2. After ACCESS_TOKEN_EXPIRE_DAYS, all old tokens have expired.
    3. Remove JWT_SECRET_OLD from .env.
    """
    options = {"require": ["exp", "sub"]}
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM], options=options)
    except ExpiredSignatureError:
        raise
    except JWTError:
        if settings.JWT_SECRET_OLD:
            return jwt.decode(
                token, settings.JWT_SECRET_OLD, algorithms=[ALGORITHM], options=options,
            )
        raise


def hash_password(password: str) -> str:
    return ph.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return ph.verify(hashed, password)
    except (VerificationError, InvalidHashError):
        return False


def create_access_token(user: dict) -> str:
    expire = utcnow() + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    payload = {
        "sub": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "role": str(user["role_id"]) if user.get("role_id") else None,
        "exp": expire,
        "type": "access",
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


async def attach_role(db, user: dict) -> dict:
    """Populate ``user["role"]`` with the referenced role document (or None)."""
    role = None
    if user.get("role_id"):
        role = await db.roles.find_one({"_id": user["role_id"]})
    user["role"] = role
    return user


def role_name_of(user: Optional[dict]) -> Optional[str]:
    """Role name of an identity whose role may be populated, denormalized or missing."""
    if not user:
        return None
    role = user.get("role")
    if isinstance(role, dict):
        return role.get("name")
    if isinstance(role, str):
        return role
    return None


async def authenticate(db, identifier: str, password: str) -> tuple[dict, str]:
    """Check credentials and issue a token.

    ``identifier`` is matched against the unique email and username fields.
    Raises AuthError(invalid_credentials | account_deactivated).
    """
    user = await db.users.find_one({"$or": [{"email": identifier}, {"username": identifier}]})
    if not user or not verify_password(password, user.get("hashed_password")):
        raise AuthError("invalid_credentials", "Invalid credentials")

    if not user.get("is_active", True):
        raise AuthError(
            "account_deactivated", "Account is deactivated. Please contact support.",
        )

    now = utcnow()
    await db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    await attach_role(db, user)

    token = create_access_token(user)
    logger.info("User logged in: %s", user["_id"])
    return user, token


async def _verify(db, token: str) -> tuple[dict, dict]:
    try:
        claims = decode_jwt(token)
    except ExpiredSignatureError:
        raise AuthError("expired", "Token has expired")
    except JWTError:
        raise AuthError("invalid_token", "Token is not valid")

    if claims.get("type") != "access":
        raise AuthError("invalid_token", "Token is not valid")

    jti = claims.get("jti")
    if jti:
        revoked = await db.access_blocklist.find_one({"jti": jti}, {"_id": 1})
        if revoked:
            raise AuthError("invalid_token", "Token has been revoked")

    try:
        user_id = ObjectId(claims["sub"])
    except (InvalidId, TypeError):
        raise AuthError("invalid_token", "Token is not valid")

    user = await db.users.find_one({"_id": user_id}, {"hashed_password": 0})
    if not user:
        raise AuthError("user_not_found", "User not found")

    if not user.get("is_active", True):
        raise AuthError("account_deactivated", "User account is deactivated")

    await attach_role(db, user)
    return user, claims


async def verify_token(db, token: str) -> dict:
    """Resolve a token to the live identity.

    The signature and expiry are checked first; the identity is then re-read
    from the users collection so deletions and deactivations since issue apply.
    """
    user, _claims = await _verify(db, token)
    return user


async def revoke_token(db, claims: dict) -> None:
    """Blocklist a token's JTI until the token would have expired anyway."""
    jti = claims.get("jti")
    if not jti:
        return
    expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    try:
        await db.access_blocklist.insert_one({"jti": jti, "expires_at": expires_at})
    except DuplicateKeyError:
        logger.debug("Token %s already revoked", jti)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_db),
) -> dict:
    """FastAPI dependency: extract and validate the identity from the bearer token."""
    if credentials is None or not credentials.credentials:
        raise AuthError("no_token", "No token, authorization denied")

    user, claims = await _verify(db, credentials.credentials)

    # Per-request context; read by authorize() and the activity logger.
    request.state.user = user
    request.state.token_claims = claims
    return user


def authorize(*roles: str):
    """Build a dependency that admits only identities whose role name is in ``roles``.

    Must run after ``get_current_user`` (router-level dependency) has attached
    the identity to the request.
    """
    allowed = frozenset(roles)

    async def _authorize(request: Request) -> dict:
        user = getattr(request.state, "user", None)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authorized",
            )
        role_name = role_name_of(user)
        if role_name not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role {role_name} is not authorized to access this route",
            )
        return user

    return _authorize


require_admin = authorize(ADMIN_ROLE)
