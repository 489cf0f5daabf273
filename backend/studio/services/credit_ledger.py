"""Credit ledger stored in identity provider user metadata."""

import math
from typing import Any

import structlog

from studio.constants import (
    CREDIT_BALANCE_KEY,
    CREDIT_SCHEMA_VERSION,
    CREDIT_SCHEMA_VERSION_KEY,
    LEGACY_REFERRAL_CREDITS_KEY,
)
from studio.services.identity_store import IdentityStore

logger = structlog.get_logger(__name__)


class InvalidCreditAmount(ValueError):
    """Credit amounts must be positive finite numbers."""


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(math.floor(number))


def _is_positive_amount(amount: Any) -> bool:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    return math.isfinite(amount) and amount > 0


def migrate_credit_metadata(metadata: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Bring credit metadata to the current schema version.

    Version 1 folds the legacy ``referral_credits`` counter into
    ``credit_balance`` and zeroes it. Once the version marker is written the
    function is a no-op, so concurrent or repeated runs never double count.

    Returns the migrated metadata and whether a legacy amount was folded in.
    """
    version = _non_negative_int(metadata.get(CREDIT_SCHEMA_VERSION_KEY))
    if version >= CREDIT_SCHEMA_VERSION:
        return metadata, False

    legacy = _non_negative_int(metadata.get(LEGACY_REFERRAL_CREDITS_KEY))
    balance = _non_negative_int(metadata.get(CREDIT_BALANCE_KEY))

    migrated = {
        **metadata,
        CREDIT_BALANCE_KEY: balance + legacy,
        CREDIT_SCHEMA_VERSION_KEY: CREDIT_SCHEMA_VERSION,
    }
    if LEGACY_REFERRAL_CREDITS_KEY in metadata:
        migrated[LEGACY_REFERRAL_CREDITS_KEY] = 0
    return migrated, legacy > 0


class CreditLedger:
    """Non-negative integer credit balance per user.

    Every operation reads the whole metadata blob and writes it back; there
    is no compare-and-swap on Supabase Auth metadata, so a concurrent writer
    to the same user can be overwritten.
    """

    def __init__(self, identity_store: IdentityStore) -> None:
        self.identity_store = identity_store

    async def _load(self, user_id: str) -> tuple[dict[str, Any], bool]:
        user = await self.identity_store.get_user(user_id)
        metadata, folded = migrate_credit_metadata(user.metadata)
        if folded:
            logger.info(
                "credit_balance_migrated",
                user_id=user_id,
                credit_balance=metadata[CREDIT_BALANCE_KEY],
            )
        return metadata, folded

    async def _persist(self, user_id: str, metadata: dict[str, Any], balance: int) -> int:
        clean = max(0, int(math.floor(balance)))
        await self.identity_store.update_metadata(
            user_id, {**metadata, CREDIT_BALANCE_KEY: clean}
        )
        return clean

    async def get_balance(self, user_id: str) -> int:
        metadata, folded = await self._load(user_id)
        balance = _non_negative_int(metadata.get(CREDIT_BALANCE_KEY))
        if folded:
            await self._persist(user_id, metadata, balance)
        return balance

    async def add_credits(self, user_id: str, amount: int | float) -> int:
        """Credit ``floor(amount)`` and return the new balance."""
        if not _is_positive_amount(amount):
            raise InvalidCreditAmount("Credit amount must be a positive number.")

        metadata, _ = await self._load(user_id)
        current = _non_negative_int(metadata.get(CREDIT_BALANCE_KEY))
        balance = await self._persist(user_id, metadata, current + math.floor(amount))
        logger.info("credits_added", user_id=user_id, amount=amount, balance=balance)
        return balance

    async def consume_credits(self, user_id: str, amount: int | float) -> bool:
        """Debit ``amount``; False (and no write) when invalid or not covered."""
        if not _is_positive_amount(amount):
            return False

        metadata, folded = await self._load(user_id)
        current = _non_negative_int(metadata.get(CREDIT_BALANCE_KEY))
        if current < amount:
            if folded:
                await self._persist(user_id, metadata, current)
            logger.info(
                "credits_insufficient", user_id=user_id, amount=amount, balance=current
            )
            return False

        balance = await self._persist(user_id, metadata, current - math.floor(amount))
        logger.info("credits_consumed", user_id=user_id, amount=amount, balance=balance)
        return True
