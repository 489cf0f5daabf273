"""Quota reconciliation service and subscription repositories."""

from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from studio.constants import (
    PAID_STATUSES,
    STATUS_ACTIVE,
    STATUS_FREE,
    STATUS_PENDING,
    TERMINAL_STATUSES,
)
from studio.models.billing import (
    BillingStatus,
    GenerationDecision,
    InvoiceSnapshot,
    QuotaReason,
    SubscriptionRecord,
    SubscriptionSnapshot,
)
from studio.services.plans import PlanTable

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def epoch_to_iso(epoch_seconds: int | None) -> str | None:
    """Provider epoch seconds -> ISO-8601 UTC string (None for 0/None)."""
    if not epoch_seconds:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=UTC).isoformat()


def _iso_to_epoch(value: str) -> int | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp())


def should_reset_usage(previous_period_start: str | None, next_period_start: int | None) -> bool:
    """Detect a billing period rollover from provider-reported boundaries.

    True when the provider reports a period start and either none was
    recorded before or the recorded one differs. Calendar time is never
    consulted: billing cycles are defined by the provider.
    """
    if not next_period_start:
        return False
    if not previous_period_start:
        return True
    return _iso_to_epoch(previous_period_start) != int(next_period_start)


class SubscriptionRepository(Protocol):
    """Storage contract for the ``subscriptions`` table."""

    async def get_by_user_id(self, user_id: str) -> SubscriptionRecord | None:
        """Fetch a user's record."""

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        """Fetch a record by Stripe customer ID."""

    async def get_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord | None:
        """Fetch a record by Stripe subscription ID."""

    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Create a new record."""

    async def update(self, user_id: str, fields: dict[str, Any]) -> SubscriptionRecord | None:
        """Overwrite the given fields on an existing record."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """

    async def count_with_status(self, statuses: frozenset[str]) -> int:
        """Number of records whose status is one of ``statuses``."""

    async def release_webhook_event(self, event_id: str) -> None:
        """Forget an idempotency key so a redelivery of the event is applied."""


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[str, SubscriptionRecord] = {}
        self.processed_events: set[str] = set()

    async def get_by_user_id(self, user_id: str) -> SubscriptionRecord | None:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        for record in self.records.values():
            if record.stripe_customer_id == customer_id:
                return record.model_copy(deep=True)
        return None

    async def get_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord | None:
        for record in self.records.values():
            if record.stripe_subscription_id == subscription_id:
                return record.model_copy(deep=True)
        return None

    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.user_id in self.records:
            raise ValueError(f"Subscription row already exists for user '{record.user_id}'")
        self.records[record.user_id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def update(self, user_id: str, fields: dict[str, Any]) -> SubscriptionRecord | None:
        current = self.records.get(user_id)
        if current is None:
            return None
        updated = SubscriptionRecord.model_validate({**current.model_dump(), **fields})
        self.records[user_id] = updated
        return updated.model_copy(deep=True)

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        self.processed_events.discard(event_id)

    async def count_with_status(self, statuses: frozenset[str]) -> int:
        return sum(1 for record in self.records.values() if record.status in statuses)


class SupabaseSubscriptionRepository:
    """Supabase-backed repository for subscription rows."""

    def __init__(self, client, subscriptions_table: str, webhook_events_table: str):
        self.client = client
        self.subscriptions_table = subscriptions_table
        self.webhook_events_table = webhook_events_table

    async def _get_one(self, column: str, value: str) -> SubscriptionRecord | None:
        response = (
            await self.client.table(self.subscriptions_table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return SubscriptionRecord.model_validate(rows[0])

    async def get_by_user_id(self, user_id: str) -> SubscriptionRecord | None:
        return await self._get_one("user_id", user_id)

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        return await self._get_one("stripe_customer_id", customer_id)

    async def get_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord | None:
        return await self._get_one("stripe_subscription_id", subscription_id)

    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        payload = record.model_dump(mode="json", exclude_none=True)
        response = await self.client.table(self.subscriptions_table).insert(payload).execute()
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return record
        return SubscriptionRecord.model_validate(rows[0])

    async def update(self, user_id: str, fields: dict[str, Any]) -> SubscriptionRecord | None:
        response = (
            await self.client.table(self.subscriptions_table)
            .update(fields)
            .eq("user_id", user_id)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return await self.get_by_user_id(user_id)
        return SubscriptionRecord.model_validate(rows[0])

    async def mark_webhook_processed(self, event_id: str) -> bool:
        existing = (
            await self.client.table(self.webhook_events_table)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        if existing.data:
            return False

        await self.client.table(self.webhook_events_table).insert(
            {"event_id": event_id, "processed_at": _utcnow().isoformat()}
        ).execute()
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        await (
            self.client.table(self.webhook_events_table)
            .delete()
            .eq("event_id", event_id)
            .execute()
        )

    async def count_with_status(self, statuses: frozenset[str]) -> int:
        response = (
            await self.client.table(self.subscriptions_table)
            .select("user_id", count="exact", head=True)
            .in_("status", sorted(statuses))
            .execute()
        )
        return response.count or 0


class QuotaService:
    """Mirrors Stripe subscription state into local quota counters and gates generations.

    The pre-generation check and the post-generation increment are two
    separate round-trips with no lock in between: concurrent requests from
    the same user can both pass the check and push ``quota_used`` past
    ``quota_limit`` by the number of requests in flight.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        plans: PlanTable,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.plans = plans
        self.now_provider = now_provider

    def resolve_quota_limit(self, price_id: str | None) -> int:
        return self.plans.resolve_quota_limit(price_id)

    def _baseline(self) -> dict[str, Any]:
        return {
            "status": STATUS_FREE,
            "quota_limit": self.plans.free_tier_quota,
            "quota_used": 0,
        }

    def _timestamp(self) -> str:
        return self.now_provider().isoformat()

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        return await self.repository.get_by_user_id(user_id)

    async def ensure_subscription_row(
        self, user_id: str, defaults: dict[str, Any] | None = None
    ) -> SubscriptionRecord:
        """Return the user's record, creating a free-tier one when absent.

        When the record exists and ``defaults`` is non-empty, the defaults are
        applied to it as a partial update first.
        """
        existing = await self.repository.get_by_user_id(user_id)
        if existing is not None:
            if defaults:
                updated = await self.repository.update(
                    user_id, {**defaults, "updated_at": self._timestamp()}
                )
                return updated or existing.model_copy(update=defaults)
            return existing

        now = self._timestamp()
        record = SubscriptionRecord.model_validate(
            {
                **self._baseline(),
                **(defaults or {}),
                "user_id": user_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        inserted = await self.repository.insert(record)
        logger.info("subscription_row_created", user_id=user_id, status=inserted.status)
        return inserted

    async def upsert_subscription_for_user(
        self,
        user_id: str,
        updates: dict[str, Any],
        *,
        create_defaults: dict[str, Any] | None = None,
    ) -> SubscriptionRecord:
        """Overwrite fields on the user's record, inserting it when absent.

        On insert, ``updates`` win over ``create_defaults`` which win over the
        free-tier baseline.
        """
        existing = await self.repository.get_by_user_id(user_id)
        if existing is not None:
            updated = await self.repository.update(
                user_id, {**updates, "updated_at": self._timestamp()}
            )
            return updated or existing.model_copy(update=updates)

        now = self._timestamp()
        record = SubscriptionRecord.model_validate(
            {
                **self._baseline(),
                **(create_defaults or {}),
                **updates,
                "user_id": user_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        return await self.repository.insert(record)

    def _expected_limit(self, record: SubscriptionRecord) -> int:
        if record.stripe_price_id and record.status in PAID_STATUSES:
            return self.resolve_quota_limit(record.stripe_price_id)
        return self.plans.free_tier_quota

    async def record_generation_attempt(self, user_id: str) -> GenerationDecision:
        """Check the user's quota before an expensive generation call.

        Does not consume anything; call ``record_generation_success`` once
        the generation has completed.
        """
        record = await self.ensure_subscription_row(user_id)
        quota_limit = self._expected_limit(record)

        if record.quota_limit != quota_limit:
            logger.info(
                "quota_limit_corrected",
                user_id=user_id,
                stored=record.quota_limit,
                expected=quota_limit,
                price_id=record.stripe_price_id,
            )
            await self.repository.update(
                user_id, {"quota_limit": quota_limit, "updated_at": self._timestamp()}
            )

        allowed = record.quota_used < quota_limit
        if not allowed:
            logger.info(
                "generation_quota_exhausted",
                user_id=user_id,
                quota_used=record.quota_used,
                quota_limit=quota_limit,
            )
        return GenerationDecision(
            allowed=allowed,
            reason=QuotaReason.QUOTA_AVAILABLE if allowed else QuotaReason.QUOTA_EXHAUSTED,
            quota_used=record.quota_used,
            quota_limit=quota_limit,
        )

    async def record_generation_success(self, user_id: str) -> SubscriptionRecord:
        record = await self.ensure_subscription_row(user_id)
        updated = await self.repository.update(
            user_id,
            {"quota_used": record.quota_used + 1, "updated_at": self._timestamp()},
        )
        return updated or record

    async def get_status(self, user_id: str) -> BillingStatus:
        record = await self.ensure_subscription_row(user_id)
        quota_limit = self._expected_limit(record)
        paid = bool(record.stripe_price_id) and record.status in PAID_STATUSES
        plan_code = self.plans.plan_for_price(record.stripe_price_id if paid else None)
        remaining = max(0, quota_limit - record.quota_used)
        return BillingStatus(
            plan_code=plan_code,
            plan_label=self.plans.label_for(plan_code),
            subscription_status=record.status,
            quota_limit=quota_limit,
            quota_used=record.quota_used,
            quota_remaining=remaining,
            current_period_end=record.current_period_end,
            requires_upgrade=remaining == 0,
        )

    async def apply_subscription_snapshot(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        previous: SubscriptionRecord | None = None,
    ) -> SubscriptionRecord:
        """Mirror a subscription created/updated/deleted payload.

        The payload's own status and period are trusted as-is, so events
        delivered out of order converge on whatever the provider reported last.
        """
        if previous is None:
            previous = await self.repository.get_by_user_id(user_id)

        quota_limit = self.resolve_quota_limit(snapshot.price_id)
        period_start = epoch_to_iso(snapshot.current_period_start)
        period_end = epoch_to_iso(snapshot.current_period_end)

        updates: dict[str, Any] = {
            "stripe_customer_id": snapshot.customer_id,
            "stripe_subscription_id": snapshot.subscription_id,
            "stripe_price_id": snapshot.price_id,
            "status": snapshot.status,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "quota_limit": quota_limit,
        }

        previous_start = previous.current_period_start if previous else None
        if should_reset_usage(previous_start, snapshot.current_period_start):
            updates["quota_used"] = 0

        if snapshot.status in TERMINAL_STATUSES:
            updates.update(
                quota_limit=self.plans.free_tier_quota,
                stripe_price_id=None,
                quota_used=0,
            )

        record = await self.upsert_subscription_for_user(
            user_id,
            updates,
            create_defaults={
                "status": snapshot.status,
                "stripe_customer_id": snapshot.customer_id,
                "stripe_subscription_id": snapshot.subscription_id,
                "stripe_price_id": snapshot.price_id,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "quota_limit": quota_limit,
                "quota_used": 0,
            },
        )
        logger.info(
            "subscription_snapshot_applied",
            user_id=user_id,
            subscription_id=snapshot.subscription_id,
            status=record.status,
            quota_limit=record.quota_limit,
            quota_used=record.quota_used,
        )
        return record

    async def apply_invoice_snapshot(
        self, user_id: str, invoice: InvoiceSnapshot
    ) -> SubscriptionRecord:
        """A paid invoice opens a fresh cycle: usage resets and the plan is active.

        Invoices without a line price keep the price already on record.
        """
        price_id = invoice.price_id
        if not price_id:
            existing = await self.repository.get_by_user_id(user_id)
            price_id = existing.stripe_price_id if existing else None
        quota_limit = self.resolve_quota_limit(price_id)
        fields: dict[str, Any] = {
            "stripe_customer_id": invoice.customer_id,
            "stripe_subscription_id": invoice.subscription_id,
            "status": STATUS_ACTIVE,
            "quota_used": 0,
            "current_period_start": epoch_to_iso(invoice.period_start),
            "current_period_end": epoch_to_iso(invoice.period_end),
            "quota_limit": quota_limit,
        }
        updates = dict(fields)
        if invoice.price_id:
            updates["stripe_price_id"] = invoice.price_id

        record = await self.upsert_subscription_for_user(
            user_id,
            updates,
            create_defaults={**fields, "stripe_price_id": invoice.price_id},
        )
        logger.info(
            "invoice_snapshot_applied",
            user_id=user_id,
            invoice_id=invoice.invoice_id,
            price_id=record.stripe_price_id,
            quota_limit=record.quota_limit,
        )
        return record

    async def mark_checkout_pending(
        self,
        user_id: str,
        *,
        customer_id: str,
        subscription_id: str | None,
    ) -> SubscriptionRecord:
        """Placeholder state while a redirect-based checkout is in flight.

        A record already mirroring a paid status is not moved back to
        pending, since the subscription event may have arrived first.
        """
        existing = await self.repository.get_by_user_id(user_id)
        defaults: dict[str, Any] = {"stripe_customer_id": customer_id}
        if subscription_id:
            defaults["stripe_subscription_id"] = subscription_id
        if existing is None or existing.status not in PAID_STATUSES:
            defaults["status"] = STATUS_PENDING
        return await self.ensure_subscription_row(user_id, defaults)

    async def process_webhook_event_id(self, event_id: str) -> bool:
        return await self.repository.mark_webhook_processed(event_id)

    async def count_active_subscriptions(self) -> int:
        return await self.repository.count_with_status(PAID_STATUSES)

    async def release_webhook_event_id(self, event_id: str) -> None:
        await self.repository.release_webhook_event(event_id)
        logger.warning("stripe_webhook_event_released", event_id=event_id)
