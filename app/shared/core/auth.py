import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, cast

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import User, UserRole
from app.shared.core.config import get_settings
from app.shared.db.session import get_db

logger = structlog.get_logger()

__all__ = [
    "CurrentUser",
    "create_access_token",
    "decode_jwt",
    "get_current_user",
    "requires_role",
    "UserRole",
]

security = HTTPBearer(auto_error=False)


def _hash_email(email: str | None) -> str | None:
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]


def create_access_token(
    data: dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """Generate a JWT signed with the application secret."""
    settings = get_settings()
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET is not configured")

    to_encode = data.copy()
    to_encode.setdefault("aud", settings.JWT_AUDIENCE)
    to_encode["exp"] = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=60)
    )
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm="HS256")


class CurrentUser(BaseModel):
    """The authenticated user, resolved from the JWT and the users table."""

    id: str
    email: Optional[str] = None
    tenant_id: str
    role: UserRole = UserRole.MEMBER


def decode_jwt(token: str) -> dict[str, Any]:
    """
    Decode and verify a bearer token (HS256, audience-checked).

    Raises:
        HTTPException 401 if the token is expired, tampered or misconfigured.
    """
    settings = get_settings()
    if not settings.JWT_SECRET:
        logger.error("jwt_secret_missing_in_decode")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
        )
        return cast(dict[str, Any], payload)
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """JWT + DB lookup. Role and tenant always come from the users table."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_jwt(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = (
        await db.execute(select(User).where(User.id == str(user_id)))
    ).scalar_one_or_none()
    if user is None:
        logger.warning("auth_user_not_found_in_db", user_id=user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User not found")

    try:
        role = UserRole(user.role)
    except ValueError:
        logger.warning("auth_invalid_user_role", user_id=user.id, role=user.role)
        role = UserRole.MEMBER

    request.state.tenant_id = user.tenant_id
    request.state.user_id = user.id
    structlog.contextvars.bind_contextvars(tenant_id=user.tenant_id)
    logger.debug("user_authenticated", user_id=user.id, email_hash=_hash_email(user.email))
    return CurrentUser(id=user.id, email=user.email, tenant_id=user.tenant_id, role=role)


def requires_role(required_role: str) -> Callable[[CurrentUser], CurrentUser]:
    """
    FastAPI dependency for RBAC.

    Usage:
        @router.post("/billing/subscriptions")
        async def create(user: CurrentUser = Depends(requires_role("admin"))):
            ...

    Access levels: owner > admin > member.
    """

    def role_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role == UserRole.OWNER:
            return user

        role_hierarchy = {UserRole.OWNER: 100, UserRole.ADMIN: 50, UserRole.MEMBER: 10}
        user_level = role_hierarchy.get(user.role, 0)
        required_level = role_hierarchy.get(UserRole(required_role), 10)

        if user_level < required_level:
            logger.warning(
                "insufficient_permissions",
                user_id=user.id,
                user_role=user.role,
                required_role=required_role,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required role: {required_role}",
            )
        return user

    return role_checker
