"""
Referral codes and referral reward claims.

Codes live in the ``referral_codes`` table (``code`` unique -> ``user_id``).
Deployments without that table keep the code in the referrer's user
metadata instead; which store is used is decided once at startup by
``detect_referral_codes_table``.
"""

import uuid
from typing import Protocol

import structlog
from postgrest.exceptions import APIError

from studio.config import ReferralConfig
from studio.constants import (
    MISSING_RELATION_CODES,
    REFERRAL_CODE_BASE_LENGTH,
    REFERRAL_CODE_KEY,
    REFERRAL_CODE_SUFFIX_LENGTH,
    REFERRAL_COUPON_ID_KEY,
    REFERRAL_COUPON_REDEEMED_KEY,
    REFERRAL_REWARD_CLAIMED_KEY,
    REFERRED_BY_KEY,
    UNIQUE_VIOLATION_CODE,
)
from studio.models.referrals import ReferralClaimResult, ReferralSummary
from studio.services.credit_ledger import CreditLedger
from studio.services.identity_store import IdentityStore
from studio.services.quota_service import QuotaService

logger = structlog.get_logger(__name__)


class ReferralError(ValueError):
    """Base class for rejected referral operations."""


class MissingReferralCode(ReferralError):
    """No referral code supplied."""


class UnknownReferralCode(ReferralError):
    """The code does not belong to any user."""


class SelfReferral(ReferralError):
    """A user tried to claim their own code."""


class ReferralCodeConflict(Exception):
    """The candidate code is already taken."""


class ReferralCodeUnavailable(RuntimeError):
    """No code could be allocated through any store."""


def referral_code_candidate(user_id: str, attempt: int) -> str:
    """Attempt 0 derives the code from the user id; later attempts add a random suffix."""
    base = user_id.replace("-", "")[:REFERRAL_CODE_BASE_LENGTH].upper()
    if attempt == 0:
        return base
    suffix = uuid.uuid4().hex[:REFERRAL_CODE_SUFFIX_LENGTH].upper()
    return f"{base}{suffix}"


def normalise_referral_code(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.strip().upper()
    return trimmed or None


def is_missing_relation_error(error: APIError) -> bool:
    return str(error.code or "") in MISSING_RELATION_CODES


class ReferralCodeStore(Protocol):
    """Storage contract for code <-> user mappings."""

    async def get_code_for_user(self, user_id: str) -> str | None:
        """Existing code for a user, if any."""

    async def insert_code(self, user_id: str, code: str) -> str:
        """Persist a new mapping. Raises ReferralCodeConflict if the code is taken."""

    async def find_user_by_code(self, code: str) -> str | None:
        """Reverse lookup; None when unknown."""


class InMemoryReferralCodeStore:
    """In-memory code store used for tests and local fallback."""

    def __init__(self) -> None:
        self.codes: dict[str, str] = {}

    async def get_code_for_user(self, user_id: str) -> str | None:
        for code, owner in self.codes.items():
            if owner == user_id:
                return code
        return None

    async def insert_code(self, user_id: str, code: str) -> str:
        if code in self.codes:
            raise ReferralCodeConflict(code)
        self.codes[code] = user_id
        return code

    async def find_user_by_code(self, code: str) -> str | None:
        return self.codes.get(code)


class SupabaseReferralCodeStore:
    """Supabase-backed ``referral_codes`` table."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def get_code_for_user(self, user_id: str) -> str | None:
        response = (
            await self.client.table(self.table)
            .select("code")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return rows[0]["code"] if rows else None

    async def insert_code(self, user_id: str, code: str) -> str:
        try:
            response = (
                await self.client.table(self.table)
                .insert({"user_id": user_id, "code": code})
                .execute()
            )
        except APIError as e:
            if str(e.code or "") == UNIQUE_VIOLATION_CODE:
                raise ReferralCodeConflict(code) from e
            raise
        rows = response.data or []
        return rows[0]["code"] if rows else code

    async def find_user_by_code(self, code: str) -> str | None:
        response = (
            await self.client.table(self.table)
            .select("user_id")
            .eq("code", code)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return str(rows[0]["user_id"]) if rows else None


class MetadataReferralCodeStore:
    """Keeps the code in the owner's user metadata.

    Reverse lookups are impossible without scanning every user, so
    ``find_user_by_code`` always returns None.
    """

    def __init__(self, identity_store: IdentityStore) -> None:
        self.identity_store = identity_store

    async def get_code_for_user(self, user_id: str) -> str | None:
        user = await self.identity_store.get_user(user_id)
        code = user.metadata.get(REFERRAL_CODE_KEY)
        return code if isinstance(code, str) and code else None

    async def insert_code(self, user_id: str, code: str) -> str:
        user = await self.identity_store.get_user(user_id)
        existing = user.metadata.get(REFERRAL_CODE_KEY)
        if isinstance(existing, str) and existing:
            return existing
        await self.identity_store.update_metadata(
            user_id, {**user.metadata, REFERRAL_CODE_KEY: code}
        )
        return code

    async def find_user_by_code(self, code: str) -> str | None:
        logger.debug("referral_lookup_unsupported_in_metadata_store", code=code)
        return None


async def detect_referral_codes_table(client, table: str) -> bool:
    """Return False when the referral_codes relation does not exist."""
    try:
        await client.table(table).select("code").limit(1).execute()
    except APIError as e:
        if is_missing_relation_error(e):
            logger.warning("referral_codes_table_missing", table=table, code=e.code)
            return False
        raise
    return True


class ReferralService:
    """Allocates referral codes and applies one-time referral rewards."""

    def __init__(
        self,
        code_store: ReferralCodeStore,
        identity_store: IdentityStore,
        ledger: CreditLedger,
        quota_service: QuotaService,
        config: ReferralConfig,
        claims_client=None,
        claims_table: str = "referral_claims",
    ) -> None:
        self.code_store = code_store
        self.identity_store = identity_store
        self.ledger = ledger
        self.quota_service = quota_service
        self.config = config
        self.claims_client = claims_client
        self.claims_table = claims_table
        self.fallback_store = MetadataReferralCodeStore(identity_store)

    async def ensure_referral_code_for_user(self, user_id: str) -> str:
        existing = await self.code_store.get_code_for_user(user_id)
        if existing:
            return existing

        for attempt in range(self.config.max_code_attempts):
            candidate = referral_code_candidate(user_id, attempt)
            try:
                code = await self.code_store.insert_code(user_id, candidate)
            except ReferralCodeConflict:
                logger.info("referral_code_collision", user_id=user_id, attempt=attempt)
                continue
            logger.info("referral_code_allocated", user_id=user_id, code=code)
            return code

        logger.warning("referral_code_attempts_exhausted", user_id=user_id)
        try:
            return await self.fallback_store.insert_code(
                user_id, referral_code_candidate(user_id, 0)
            )
        except Exception as e:
            logger.exception("referral_code_metadata_fallback_failed", user_id=user_id)
            raise ReferralCodeUnavailable(
                "Unable to allocate referral code for user."
            ) from e

    async def find_referrer_by_code(self, code: str) -> str | None:
        normalised = normalise_referral_code(code)
        if not normalised:
            return None
        return await self.code_store.find_user_by_code(normalised)

    async def claim_referral(self, user_id: str, code: str | None) -> ReferralClaimResult:
        """Reward the owner of ``code`` once on behalf of ``user_id``.

        Raises:
            MissingReferralCode: empty code.
            UnknownReferralCode: no user owns the code.
            SelfReferral: the code belongs to the claimant.
        """
        normalised = normalise_referral_code(code)
        if not normalised:
            raise MissingReferralCode("Referral code is missing.")

        claimant = await self.identity_store.get_user(user_id)
        metadata = claimant.metadata
        referred_by = metadata.get(REFERRED_BY_KEY)
        if metadata.get(REFERRAL_REWARD_CLAIMED_KEY) is True or (
            isinstance(referred_by, str) and referred_by
        ):
            logger.info("referral_already_claimed", user_id=user_id)
            return ReferralClaimResult(applied=False)

        referrer_id = await self.find_referrer_by_code(normalised)
        if not referrer_id:
            raise UnknownReferralCode("Referral code is invalid.")
        if referrer_id == user_id:
            raise SelfReferral("You cannot use your own referral code.")

        await self.quota_service.ensure_subscription_row(user_id)
        await self.quota_service.ensure_subscription_row(referrer_id)
        await self.ensure_referral_code_for_user(referrer_id)

        # The claimant is marked before the referrer is credited: a failure in
        # between can cost a reward but never pays one twice.
        claimant = await self.identity_store.get_user(user_id)
        await self.identity_store.update_metadata(
            user_id,
            {
                **claimant.metadata,
                REFERRED_BY_KEY: normalised,
                REFERRAL_REWARD_CLAIMED_KEY: True,
                REFERRAL_COUPON_ID_KEY: claimant.metadata.get(REFERRAL_COUPON_ID_KEY)
                or self.config.stripe_coupon_id
                or None,
                REFERRAL_COUPON_REDEEMED_KEY: False,
            },
        )

        bonus = self.config.reward_bonus
        try:
            await self.ledger.add_credits(referrer_id, bonus)
        except Exception:
            logger.exception(
                "referral_reward_credit_failed", user_id=user_id, referrer_id=referrer_id
            )
            await self.identity_store.update_metadata(user_id, claimant.metadata)
            raise

        await self._record_claim(referrer_id, user_id, normalised)

        logger.info(
            "referral_claimed", user_id=user_id, referrer_id=referrer_id, reward=bonus
        )
        return ReferralClaimResult(applied=True, reward=bonus, referrer_id=referrer_id)

    async def _record_claim(self, referrer_id: str, referred_id: str, code: str) -> None:
        if self.claims_client is None:
            return
        try:
            await self.claims_client.table(self.claims_table).insert(
                {"referrer_id": referrer_id, "referred_id": referred_id, "referral_code": code}
            ).execute()
        except Exception as e:
            logger.warning("referral_claim_record_failed", referred_id=referred_id, error=str(e))

    async def get_referral_summary(self, user_id: str) -> ReferralSummary:
        code = await self.ensure_referral_code_for_user(user_id)
        credits = await self.ledger.get_balance(user_id)
        user = await self.identity_store.get_user(user_id)
        referred_by = user.metadata.get(REFERRED_BY_KEY)
        return ReferralSummary(
            code=code,
            credits=credits,
            referred_by=referred_by if isinstance(referred_by, str) else None,
        )
