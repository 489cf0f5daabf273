"""
Unit tests for the auth dependencies (get_current_user, require_admin).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from studio.auth import AuthenticatedUser, get_current_user, is_admin_user, require_admin


def _make_request(supabase_client=None):
    """Create a mock FastAPI Request with app.state.supabase set."""
    request = MagicMock()
    request.app.state.supabase = supabase_client
    return request


def _make_credentials(token: str = "valid-token") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    @pytest.mark.asyncio
    async def test_valid_token_returns_user(self):
        """A valid token returns an AuthenticatedUser with its metadata."""
        mock_user = MagicMock()
        mock_user.id = "user-123"
        mock_user.email = "test@example.com"
        mock_user.user_metadata = {"role": "member"}
        mock_user.app_metadata = {"provider": "email"}

        mock_response = MagicMock()
        mock_response.user = mock_user

        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(return_value=mock_response)

        request = _make_request(supabase_client=mock_supabase)
        credentials = _make_credentials("valid-token")

        result = await get_current_user(request, credentials)

        assert isinstance(result, AuthenticatedUser)
        assert result.id == "user-123"
        assert result.email == "test@example.com"
        assert result.user_metadata == {"role": "member"}
        assert result.app_metadata == {"provider": "email"}
        mock_supabase.auth.get_user.assert_awaited_once_with("valid-token")

    @pytest.mark.asyncio
    async def test_invalid_token_raises_401(self):
        """A token that returns no user raises 401."""
        mock_response = MagicMock()
        mock_response.user = None

        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(return_value=mock_response)

        request = _make_request(supabase_client=mock_supabase)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("bad-token"))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token_raises_401(self):
        """A token that causes an exception raises 401."""
        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(side_effect=Exception("Token expired"))

        request = _make_request(supabase_client=mock_supabase)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("expired-token"))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_no_supabase_client_raises_503(self):
        """When Supabase client is None, raises 503."""
        request = _make_request(supabase_client=None)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("any-token"))

        assert exc_info.value.status_code == 503


class TestIsAdminUser:
    def test_metadata_role(self):
        user = AuthenticatedUser(id="u1", user_metadata={"role": "Owner"})
        assert is_admin_user(user, []) is True

    def test_metadata_flag(self):
        assert is_admin_user(AuthenticatedUser(id="u1", user_metadata={"is_admin": True}), []) is True
        assert is_admin_user(AuthenticatedUser(id="u1", user_metadata={"is_admin": "yes"}), []) is False

    def test_app_metadata_roles(self):
        assert is_admin_user(AuthenticatedUser(id="u1", app_metadata={"roles": ["editor", "admin"]}), [])
        assert is_admin_user(AuthenticatedUser(id="u1", app_metadata={"roles": "superuser"}), [])

    def test_allow_listed_email(self):
        user = AuthenticatedUser(id="u1", email="Admin@Example.com")
        assert is_admin_user(user, ["admin@example.com"]) is True
        assert is_admin_user(user, ["someone@example.com"]) is False

    def test_regular_user(self):
        assert is_admin_user(AuthenticatedUser(id="u1", email="user@example.com"), []) is False
        assert is_admin_user(None, ["admin@example.com"]) is False


class TestRequireAdmin:
    async def test_admin_email_from_settings(self):
        from studio.config import get_settings

        get_settings.cache_clear()
        user = AuthenticatedUser(id="u1", email="admin@example.com")

        assert await require_admin(user) is user

    async def test_non_admin_gets_403(self):
        from studio.config import get_settings

        get_settings.cache_clear()

        with pytest.raises(HTTPException) as exc_info:
            await require_admin(AuthenticatedUser(id="u2", email="user@example.com"))

        assert exc_info.value.status_code == 403
