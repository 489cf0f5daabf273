"""Applies Stripe webhook events to local subscription state."""

from typing import Any

import structlog

from studio.constants import (
    CATEGORY_BILLING_SUMMARY,
    CATEGORY_PAYMENT_FAILED,
    CATEGORY_SUBSCRIPTION_CANCELED,
    METADATA_USER_ID_KEY,
    REFERRAL_COUPON_ID_KEY,
    REFERRAL_COUPON_REDEEMED_KEY,
)
from studio.models.billing import (
    BillingEventKind,
    InvoiceSnapshot,
    SubscriptionRecord,
)
from studio.services.email_service import EmailNotifier, notify_safely
from studio.services.identity_store import IdentityStore
from studio.services.quota_service import QuotaService
from studio.services.stripe_service import StripeService, _ref_id

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EVENTS = {
    BillingEventKind.SUBSCRIPTION_CREATED,
    BillingEventKind.SUBSCRIPTION_UPDATED,
    BillingEventKind.SUBSCRIPTION_DELETED,
}


def _metadata_user_id(metadata: dict[str, Any] | None) -> str | None:
    metadata = metadata or {}
    user_id = metadata.get(METADATA_USER_ID_KEY) or metadata.get("user_id")
    return str(user_id) if user_id else None


class BillingEventProcessor:
    """Dispatches billing notifications to the quota reconciler.

    Events whose owning user cannot be determined are logged and dropped.
    Notification emails and referral coupon bookkeeping are secondary: their
    failures are logged and never undo or block the subscription update.
    """

    def __init__(
        self,
        quota_service: QuotaService,
        stripe_service: StripeService,
        identity_store: IdentityStore,
        notifier: EmailNotifier | None = None,
    ) -> None:
        self.quota_service = quota_service
        self.stripe_service = stripe_service
        self.identity_store = identity_store
        self.notifier = notifier

    async def apply_billing_event(self, kind: BillingEventKind, payload: dict[str, Any]) -> bool:
        """Apply one event. Returns False when the event was ignored or dropped."""
        if kind in SUBSCRIPTION_EVENTS:
            return await self._handle_subscription(kind, payload)
        if kind == BillingEventKind.CHECKOUT_COMPLETED:
            return await self._handle_checkout(payload)
        if kind == BillingEventKind.INVOICE_PAID:
            return await self._handle_invoice_paid(payload)
        if kind == BillingEventKind.PAYMENT_FAILED:
            return await self._handle_payment_failed(payload)
        return False

    async def _lookup_customer_user(self, customer_id: str) -> str | None:
        try:
            return await self.stripe_service.fetch_customer_user_id(customer_id)
        except Exception as e:
            logger.error("stripe_customer_lookup_failed", customer_id=customer_id, error=str(e))
            return None

    async def _resolve_owner(
        self,
        *,
        metadata: dict[str, Any] | None,
        customer_id: str | None,
        subscription_id: str | None = None,
    ) -> tuple[str | None, SubscriptionRecord | None]:
        """Find the user an event belongs to.

        Order: event metadata, local record by subscription id, local record by
        customer id, then the Stripe customer's own metadata.
        """
        repository = self.quota_service.repository
        existing: SubscriptionRecord | None = None
        if subscription_id:
            existing = await repository.get_by_subscription_id(subscription_id)
        if existing is None and customer_id:
            existing = await repository.get_by_customer_id(customer_id)

        user_id = _metadata_user_id(metadata) or (existing.user_id if existing else None)
        if not user_id and customer_id:
            user_id = await self._lookup_customer_user(customer_id)

        if existing is not None and existing.user_id != user_id:
            existing = None
        return user_id, existing

    async def _handle_subscription(self, kind: BillingEventKind, payload: dict[str, Any]) -> bool:
        try:
            snapshot = self.stripe_service.subscription_snapshot_from_object(payload)
        except ValueError as e:
            logger.warning("stripe_subscription_snapshot_invalid", kind=kind.value, error=str(e))
            return False

        user_id, existing = await self._resolve_owner(
            metadata=snapshot.metadata, customer_id=snapshot.customer_id
        )
        if not user_id:
            logger.warning(
                "billing_subscription_user_missing",
                customer_id=snapshot.customer_id,
                subscription_id=snapshot.subscription_id,
            )
            return False

        await self.quota_service.apply_subscription_snapshot(user_id, snapshot, previous=existing)

        if kind == BillingEventKind.SUBSCRIPTION_DELETED:
            await notify_safely(
                self.notifier,
                to=await self._user_email(user_id),
                subject="Your subscription has ended",
                body=(
                    "Your subscription was canceled. Your account is back on the free plan "
                    f"with {self.quota_service.plans.free_tier_quota} generations per cycle."
                ),
                category=CATEGORY_SUBSCRIPTION_CANCELED,
            )
        return True

    async def _handle_checkout(self, payload: dict[str, Any]) -> bool:
        customer_id = _ref_id(payload.get("customer"))
        user_id = _metadata_user_id(payload.get("metadata")) or payload.get("client_reference_id")
        if not customer_id or not user_id:
            logger.warning("stripe_checkout_session_incomplete", customer_id=customer_id)
            return False

        await self.quota_service.mark_checkout_pending(
            str(user_id),
            customer_id=customer_id,
            subscription_id=_ref_id(payload.get("subscription")),
        )
        return True

    async def _handle_invoice_paid(self, payload: dict[str, Any]) -> bool:
        try:
            invoice = self.stripe_service.invoice_snapshot_from_object(payload)
        except ValueError as e:
            logger.warning("stripe_invoice_snapshot_invalid", error=str(e))
            return False

        user_id, _ = await self._resolve_owner(
            metadata=invoice.metadata,
            customer_id=invoice.customer_id,
            subscription_id=invoice.subscription_id,
        )
        if not user_id:
            logger.warning(
                "billing_invoice_user_missing",
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.invoice_id,
            )
            return False

        record = await self.quota_service.apply_invoice_snapshot(user_id, invoice)

        await self._redeem_referral_coupon(user_id, invoice)
        plan_code = self.quota_service.plans.plan_for_price(record.stripe_price_id)
        await notify_safely(
            self.notifier,
            to=invoice.customer_email or await self._user_email(user_id),
            subject="Payment received",
            body=(
                f"Thank you! We received {invoice.amount_paid / 100:.2f} "
                f"{invoice.currency.upper()}. Your {self.quota_service.plans.label_for(plan_code)} "
                f"plan includes {record.quota_limit} generations this cycle"
                + (f", until {record.current_period_end}." if record.current_period_end else ".")
            ),
            category=CATEGORY_BILLING_SUMMARY,
        )
        return True

    async def _handle_payment_failed(self, payload: dict[str, Any]) -> bool:
        customer_id = _ref_id(payload.get("customer"))
        if not customer_id:
            logger.warning("stripe_payment_failed_without_customer")
            return False

        user_id, _ = await self._resolve_owner(
            metadata=payload.get("metadata"),
            customer_id=customer_id,
            subscription_id=_ref_id(payload.get("subscription")),
        )
        if not user_id:
            logger.warning("billing_payment_failed_user_missing", customer_id=customer_id)
            return False

        await notify_safely(
            self.notifier,
            to=payload.get("customer_email") or await self._user_email(user_id),
            subject="Your payment failed",
            body=(
                "We could not process your latest subscription payment. "
                "Please update your payment method from the billing portal to keep your plan."
            ),
            category=CATEGORY_PAYMENT_FAILED,
        )
        return True

    async def _user_email(self, user_id: str) -> str | None:
        try:
            user = await self.identity_store.get_user(user_id)
        except Exception as e:
            logger.warning("user_email_lookup_failed", user_id=user_id, error=str(e))
            return None
        return user.email

    async def _redeem_referral_coupon(self, user_id: str, invoice: InvoiceSnapshot) -> None:
        """Flag the referral coupon as used once an invoice carried it."""
        try:
            user = await self.identity_store.get_user(user_id)
            coupon_id = user.metadata.get(REFERRAL_COUPON_ID_KEY)
            if not coupon_id or user.metadata.get(REFERRAL_COUPON_REDEEMED_KEY) is True:
                return
            if coupon_id not in invoice.coupon_ids:
                return
            await self.identity_store.update_metadata(
                user_id, {**user.metadata, REFERRAL_COUPON_REDEEMED_KEY: True}
            )
            logger.info("referral_coupon_redeemed", user_id=user_id, coupon_id=coupon_id)
        except Exception as e:
            logger.warning("referral_coupon_marking_failed", user_id=user_id, error=str(e))
