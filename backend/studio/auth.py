"""
Authentication dependencies for FastAPI endpoints.

Provides JWT verification via Supabase auth.get_user(), a FastAPI
dependency that can be used to protect endpoints, and an admin-only
variant for back-office routes.
"""

from typing import Annotated, Any

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from studio.config import get_settings
from studio.constants import ADMIN_ROLE_KEYS

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)
    app_metadata: dict[str, Any] = Field(default_factory=dict)


def _is_admin_role(value: Any) -> bool:
    return isinstance(value, str) and value.lower() in ADMIN_ROLE_KEYS


def is_admin_user(user: AuthenticatedUser | None, admin_emails: list[str]) -> bool:
    """
    Admin when any of these hold: an admin role or ``is_admin`` flag in user
    metadata, an admin role in app metadata ``roles`` (string or list), or an
    allow-listed email.
    """
    if user is None:
        return False

    if _is_admin_role(user.user_metadata.get("role")):
        return True
    if user.user_metadata.get("is_admin") is True:
        return True

    app_roles = user.app_metadata.get("roles")
    if isinstance(app_roles, list):
        if any(_is_admin_role(role) for role in app_roles):
            return True
    elif _is_admin_role(app_roles):
        return True

    if admin_emails and user.email:
        return user.email.lower() in admin_emails
    return False


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return AuthenticatedUser(
            id=str(user.id),
            email=user.email,
            user_metadata=_as_dict(getattr(user, "user_metadata", None)),
            app_metadata=_as_dict(getattr(user, "app_metadata", None)),
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_admin(user: CurrentUser) -> AuthenticatedUser:
    """Dependency that rejects authenticated non-admins with 403."""
    if not is_admin_user(user, get_settings().admin_email_list):
        logger.warning("admin_access_denied", user_id=user.id)
        raise HTTPException(status_code=403, detail="Admin privileges required.")
    return user


AdminUser = Annotated[AuthenticatedUser, Depends(require_admin)]
