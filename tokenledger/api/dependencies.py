"""
FastAPI Dependencies - Authentication, authorization and shared clients.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokenledger.config import settings
from tokenledger.db.models import User
from tokenledger.db.session import get_write_db
from tokenledger.exceptions import AuthenticationError
from tokenledger.models.api import UserRole
from tokenledger.services.openrouter import OpenRouterClient

logger = get_logger(__name__)

ADMIN_ROLES = frozenset({UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})


@dataclass
class CurrentUser:
    """Authenticated user resolved from a bearer token."""

    user_id: UUID
    role: str
    name: str
    email: str

    @property
    def is_admin(self) -> bool:
        """Admins and super admins may act on other users' tokens."""
        return self.role in ADMIN_ROLES


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> UUID:
    """
    Validate a bearer JWT and return the user id from its `sub` claim.

    Raises:
        AuthenticationError: expired, badly signed or malformed token
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")
    try:
        return UUID(str(subject))
    except ValueError as exc:
        raise AuthenticationError("Token subject is not a user id") from exc


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
) -> CurrentUser:
    """
    FastAPI dependency resolving the caller from `Authorization: Bearer {jwt}`.

    Raises:
        HTTPException 401 if no token, an invalid token, or an unknown user
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = decode_access_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("jwt_auth_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        logger.warning("jwt_auth_unknown_user", user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(user_id=user.id, role=user.role, name=user.name, email=user.email)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    Require admin or super_admin role.

    Raises:
        HTTPException 403 for any other role
    """
    if not user.is_admin:
        logger.warning("admin_auth_insufficient_role", user_id=str(user.user_id), role=user.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def get_openrouter_client() -> AsyncGenerator[OpenRouterClient, None]:
    """OpenRouter client for the duration of one request."""
    client = OpenRouterClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        timeout=settings.openrouter_timeout_seconds,
        app_title=settings.openrouter_app_title,
        referer=settings.openrouter_referer,
    )
    try:
        yield client
    finally:
        await client.close()
