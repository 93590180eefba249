"""
User authentication for the public and admin APIs.

Tokens are HS256 JWTs carrying {userId, username, role, email}. Browsers get
them in the httponly ``auth-token`` cookie; API clients may send
``Authorization: Bearer <token>`` instead.

Security features:
- argon2id password hashes (argon2-cffi defaults)
- Account lockout after repeated failed logins
- Security event logging for failed authentication attempts
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, NamedTuple, Optional, Tuple

import jwt
import sqlalchemy as sa
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from fastapi import HTTPException, Request, Response

from api.common import ensure_utc, get_real_ip
from api.database import users
from api.db_retry import db_execute_with_retry, fetch_one_with_retry
from api.enums import Role
from api.errors import ERROR_MESSAGES
from config import (
    AUTH_COOKIE_NAME,
    JWT_ALGORITHM,
    JWT_EXPIRY_HOURS,
    JWT_SECRET,
    LOGIN_LOCKOUT_MINUTES,
    LOGIN_MAX_FAILED_ATTEMPTS,
    SECURE_COOKIES,
)

logger = logging.getLogger(__name__)

# Security event logger for authentication events
security_logger = logging.getLogger("security.auth")

STAFF_ROLES = (Role.ADMIN.value, Role.CURATOR.value)
ADMIN_ROLES = (Role.ADMIN.value,)
ALL_ROLES = (Role.ADMIN.value, Role.CURATOR.value, Role.VIEWER.value)

_password_hasher = PasswordHasher()


class AuthUser(NamedTuple):
    """The signed-in user as carried by the token."""

    id: int
    username: str
    role: str
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def _get_request_context(request: Request) -> dict:
    """Extract request context for security logging."""
    return {
        "client_ip": get_real_ip(request),
        "user_agent": request.headers.get("user-agent", "unknown")[:200],
        "path": request.url.path,
    }


# ============ Passwords ============


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Check a password against a stored argon2 hash. Missing or malformed hashes never match."""
    if not password_hash:
        return False
    try:
        return _password_hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError) as e:
        logger.warning(f"Password verification failed on stored hash: {e}")
        return False


def password_needs_rehash(password_hash: str) -> bool:
    try:
        return _password_hasher.check_needs_rehash(password_hash)
    except InvalidHashError:
        return True


# ============ Tokens ============


def create_access_token(user_id: int, username: str, role: str, email: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "username": username,
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRY_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[AuthUser]:
    """
    Verify a token and return its user, or None when it is expired, tampered
    with, or missing required claims.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Access token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid access token: {e}")
        return None

    try:
        return AuthUser(
            id=int(payload["userId"]),
            username=str(payload["username"]),
            role=str(payload["role"]),
            email=str(payload.get("email", "")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def get_token_from_request(request: Request) -> Optional[str]:
    """Token from the auth cookie, else from an Authorization: Bearer header."""
    token = request.cookies.get(AUTH_COOKIE_NAME)
    if token:
        return token
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
        max_age=JWT_EXPIRY_HOURS * 3600,
        path="/",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(
        key=AUTH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
    )


# ============ Request authentication ============


def role_requirement_message(roles: Iterable[str]) -> str:
    roles = set(roles)
    if Role.ADMIN.value in roles and Role.CURATOR.value in roles:
        return ERROR_MESSAGES["staff_required"]
    if Role.ADMIN.value in roles:
        return ERROR_MESSAGES["admin_required"]
    if Role.CURATOR.value in roles:
        return "キュレーター権限が必要です"
    return ERROR_MESSAGES["forbidden"]


def get_optional_user(request: Request) -> Optional[AuthUser]:
    """The signed-in user, or None for anonymous requests and unusable tokens."""
    token = get_token_from_request(request)
    if not token:
        return None
    return decode_access_token(token)


def authenticate(request: Request, roles: Iterable[str] = STAFF_ROLES) -> AuthUser:
    """
    Require a valid token whose role is in roles.

    Raises:
        HTTPException: 401 without a token or with an invalid one,
            403 when the role is not allowed
    """
    roles = tuple(roles)
    token = get_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail=ERROR_MESSAGES["auth_required"])

    user = decode_access_token(token)
    if user is None:
        security_logger.warning(
            "Authentication failed: invalid token",
            extra={"event": "auth_failure", "reason": "invalid_token", **_get_request_context(request)},
        )
        raise HTTPException(status_code=401, detail=ERROR_MESSAGES["invalid_token"])

    if user.role not in roles:
        security_logger.warning(
            "Authorization failed: role not permitted",
            extra={
                "event": "auth_failure",
                "reason": "insufficient_role",
                "user_id": user.id,
                "role": user.role,
                **_get_request_context(request),
            },
        )
        raise HTTPException(status_code=403, detail=role_requirement_message(roles))

    return user


# FastAPI dependencies


async def require_user(request: Request) -> AuthUser:
    return authenticate(request, ALL_ROLES)


async def require_staff(request: Request) -> AuthUser:
    return authenticate(request, STAFF_ROLES)


async def require_admin(request: Request) -> AuthUser:
    return authenticate(request, ADMIN_ROLES)


def can_modify(user: AuthUser, owner_id: Optional[int]) -> bool:
    """ADMIN may modify anything; everyone else only what they created."""
    return user.is_admin or (owner_id is not None and owner_id == user.id)


def ensure_owner_or_admin(user: AuthUser, owner_id: Optional[int], message: str) -> None:
    if not can_modify(user, owner_id):
        raise HTTPException(status_code=403, detail=message)


# ============ Login ============


def is_locked_out(row, now: Optional[datetime] = None) -> bool:
    """True when the account has reached the failure limit inside the lockout window."""
    now = now or datetime.now(timezone.utc)
    last_failed = ensure_utc(row["last_failed_login_at"])
    if not last_failed or (row["failed_login_count"] or 0) < LOGIN_MAX_FAILED_ATTEMPTS:
        return False
    return now - last_failed < timedelta(minutes=LOGIN_LOCKOUT_MINUTES)


async def _record_failed_login(row, now: datetime) -> int:
    """Bump the failure counter, restarting it when the previous failure is outside the window."""
    last_failed = ensure_utc(row["last_failed_login_at"])
    if last_failed and now - last_failed < timedelta(minutes=LOGIN_LOCKOUT_MINUTES):
        count = (row["failed_login_count"] or 0) + 1
    else:
        count = 1
    await db_execute_with_retry(
        users.update()
        .where(users.c.id == row["id"])
        .values(failed_login_count=count, last_failed_login_at=now)
    )
    return count


async def login_user(request: Request, username: str, password: str) -> Tuple[dict, str]:
    """
    Check credentials and issue a token.

    The identifier may be a username or an email address. Inactive accounts
    are treated as unknown.

    Returns:
        (user row as dict, token)

    Raises:
        HTTPException: 401 for bad credentials, 423 while locked out
    """
    ctx = _get_request_context(request)
    now = datetime.now(timezone.utc)

    row = await fetch_one_with_retry(
        sa.select(users).where(
            sa.or_(users.c.username == username, users.c.email == username),
            users.c.is_active == sa.true(),
        )
    )
    if row is None:
        security_logger.warning(
            "Login failed: unknown user",
            extra={"event": "login_failure", "reason": "unknown_user", **ctx},
        )
        raise HTTPException(status_code=401, detail=ERROR_MESSAGES["invalid_credentials"])

    if is_locked_out(row, now):
        security_logger.warning(
            "Login rejected: account locked",
            extra={"event": "login_locked", "user_id": row["id"], **ctx},
        )
        raise HTTPException(status_code=423, detail=ERROR_MESSAGES["account_locked"])

    if not verify_password(password, row["password_hash"]):
        count = await _record_failed_login(row, now)
        security_logger.warning(
            "Login failed: invalid password",
            extra={"event": "login_failure", "reason": "invalid_password", "user_id": row["id"],
                   "failed_count": count, **ctx},
        )
        if count >= LOGIN_MAX_FAILED_ATTEMPTS:
            raise HTTPException(status_code=423, detail=ERROR_MESSAGES["account_locked"])
        raise HTTPException(status_code=401, detail=ERROR_MESSAGES["invalid_credentials"])

    values = {"failed_login_count": 0, "last_failed_login_at": None, "last_login_at": now}
    if password_needs_rehash(row["password_hash"]):
        values["password_hash"] = hash_password(password)
    await db_execute_with_retry(users.update().where(users.c.id == row["id"]).values(**values))

    security_logger.info(
        "Login successful",
        extra={"event": "login_success", "user_id": row["id"], **ctx},
    )

    token = create_access_token(row["id"], row["username"], row["role"], row["email"])
    return dict(row._mapping), token


def serialize_user(row) -> dict:
    """Public representation of a user row (never includes the password hash)."""
    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "displayName": row["display_name"],
        "department": row["department"],
        "role": row["role"],
        "isActive": bool(row["is_active"]),
        "lastLoginAt": ensure_utc(row["last_login_at"]).isoformat() if row["last_login_at"] else None,
        "createdAt": ensure_utc(row["created_at"]).isoformat() if row["created_at"] else None,
    }
