"""
Access to per-user metadata held by the identity provider (Supabase Auth).

Metadata is an opaque JSON mapping that can only be replaced as a whole, so
every writer reads the full blob, mutates it and writes it back.
"""

from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class IdentityUser(BaseModel):
    """Subset of the identity provider's user record the backend relies on."""

    id: str
    email: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    app_metadata: dict[str, Any] = Field(default_factory=dict)


class UserNotFoundError(LookupError):
    """The identity provider has no user with this id."""


class IdentityStore(Protocol):
    """Read/replace contract for user metadata."""

    async def get_user(self, user_id: str) -> IdentityUser:
        """Load the user with its metadata. Raises UserNotFoundError."""

    async def update_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        """Replace the user's metadata blob."""


class InMemoryIdentityStore:
    """In-memory identity store used for tests and local fallback."""

    def __init__(self, users: dict[str, IdentityUser] | None = None) -> None:
        self.users: dict[str, IdentityUser] = users or {}

    def add_user(self, user_id: str, email: str | None = None, **metadata: Any) -> IdentityUser:
        user = IdentityUser(id=user_id, email=email, metadata=metadata)
        self.users[user_id] = user
        return user

    async def get_user(self, user_id: str) -> IdentityUser:
        user = self.users.get(user_id)
        if user is None:
            # Unknown users behave like fresh accounts with empty metadata
            return IdentityUser(id=user_id)
        return user.model_copy(deep=True)

    async def update_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        current = self.users.get(user_id) or IdentityUser(id=user_id)
        self.users[user_id] = current.model_copy(update={"metadata": dict(metadata)})


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


class SupabaseIdentityStore:
    """Supabase Auth admin API backed identity store (requires the secret key)."""

    def __init__(self, client) -> None:
        self.client = client

    async def get_user(self, user_id: str) -> IdentityUser:
        response = await self.client.auth.admin.get_user_by_id(user_id)
        user = response.user if response else None
        if user is None:
            raise UserNotFoundError(user_id)
        return IdentityUser(
            id=str(user.id),
            email=user.email,
            metadata=_as_dict(user.user_metadata),
            app_metadata=_as_dict(user.app_metadata),
        )

    async def update_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        await self.client.auth.admin.update_user_by_id(user_id, {"user_metadata": metadata})
        logger.debug("user_metadata_updated", user_id=user_id, keys=sorted(metadata))
