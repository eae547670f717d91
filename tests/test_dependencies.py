"""
Tests for API Dependencies.

Tests bearer token authentication and the admin role check.
"""

import time
from unittest.mock import AsyncMock
from uuid import uuid4

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from tests.conftest import create_mock_user, create_result
from tokenledger.api.dependencies import (
    CurrentUser,
    decode_access_token,
    get_current_user,
    get_openrouter_client,
    require_admin,
)
from tokenledger.config import settings
from tokenledger.exceptions import AuthenticationError
from tokenledger.services.openrouter import OpenRouterClient


def _token(claims: dict, secret: str | None = None) -> str:
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestCurrentUser:
    """Tests for the CurrentUser role helpers."""

    @pytest.mark.parametrize(
        ("role", "expected"),
        [("admin", True), ("super_admin", True), ("user", False), ("", False)],
    )
    def test_is_admin(self, role: str, expected: bool) -> None:
        """Admin and super admin roles count as admin."""
        user = CurrentUser(user_id=uuid4(), role=role, name="n", email="e@example.com")
        assert user.is_admin is expected


class TestDecodeAccessToken:
    """Tests for JWT validation."""

    def test_valid_token(self) -> None:
        """The sub claim becomes the user id."""
        user_id = uuid4()
        token = _token({"sub": str(user_id), "exp": int(time.time()) + 60})

        assert decode_access_token(token) == user_id

    def test_expired_token(self) -> None:
        """Expired tokens are rejected."""
        token = _token({"sub": str(uuid4()), "exp": int(time.time()) - 60})

        with pytest.raises(AuthenticationError) as exc_info:
            decode_access_token(token)

        assert exc_info.value.message == "Token has expired"

    def test_wrong_secret(self) -> None:
        """Tokens signed with another key are rejected."""
        token = _token({"sub": str(uuid4())}, secret="another-secret-key-that-is-long-enough")

        with pytest.raises(AuthenticationError):
            decode_access_token(token)

    def test_missing_subject(self) -> None:
        """A token without sub names nobody."""
        with pytest.raises(AuthenticationError) as exc_info:
            decode_access_token(_token({"role": "admin"}))

        assert exc_info.value.message == "Token has no subject"

    def test_subject_not_uuid(self) -> None:
        """Legacy integer ids are not accepted."""
        with pytest.raises(AuthenticationError):
            decode_access_token(_token({"sub": "42"}))


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    async def test_resolves_user(self, db_session: AsyncMock) -> None:
        """Role, name and email come from the users table."""
        user = create_mock_user(role="admin", name="Ada", email="ada@example.com")
        db_session.execute = AsyncMock(return_value=create_result(scalar=user))

        current = await get_current_user(_credentials(_token({"sub": str(user.id)})), db_session)

        assert current.user_id == user.id
        assert current.role == "admin"
        assert current.name == "Ada"
        assert current.email == "ada@example.com"

    async def test_no_credentials(self, db_session: AsyncMock) -> None:
        """401 with a WWW-Authenticate challenge."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None, db_session)

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}
        db_session.execute.assert_not_awaited()

    async def test_invalid_token(self, db_session: AsyncMock) -> None:
        """Bad tokens never reach the database."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_credentials("garbage"), db_session)

        assert exc_info.value.status_code == 401
        db_session.execute.assert_not_awaited()

    async def test_unknown_user(self, db_session: AsyncMock) -> None:
        """A valid token for a deleted user is still 401."""
        db_session.execute = AsyncMock(return_value=create_result(scalar=None))

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_credentials(_token({"sub": str(uuid4())})), db_session)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "User not found"


class TestRequireAdmin:
    """Tests for the admin role dependency."""

    async def test_admin_passes(self, admin_user: CurrentUser) -> None:
        """Admins are returned unchanged."""
        assert await require_admin(admin_user) is admin_user

    async def test_user_forbidden(self, current_user: CurrentUser) -> None:
        """Everyone else is 403."""
        with pytest.raises(HTTPException) as exc_info:
            await require_admin(current_user)

        assert exc_info.value.status_code == 403


class TestOpenRouterClientDependency:
    """Tests for the per-request AI client."""

    async def test_configured_from_settings(self) -> None:
        """Client uses the configured key and base URL and is closed afterwards."""
        generator = get_openrouter_client()
        client = await anext(generator)

        assert isinstance(client, OpenRouterClient)
        assert client.api_key == settings.openrouter_api_key
        assert client.base_url == settings.openrouter_base_url.rstrip("/")

        with pytest.raises(StopAsyncIteration):
            await anext(generator)
