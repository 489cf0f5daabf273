"""Stripe API wrapper."""

import asyncio
from typing import Any

import stripe

from studio.config import StripeConfig, require
from studio.constants import METADATA_USER_ID_KEY, REVENUE_TRANSACTION_TYPES
from studio.models.billing import InvoiceSnapshot, RevenueSummary, SubscriptionSnapshot


def _to_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ref_id(value: Any) -> str | None:
    """Stripe expandable field: either an id string or the expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _first_item(container: Any) -> dict:
    items = (container or {}).get("data", []) if isinstance(container, dict) else []
    return items[0] if items else {}


class StripeService:
    """Encapsulates Stripe SDK calls used by billing routes and webhooks."""

    def __init__(self, config: StripeConfig) -> None:
        require(config.secret_key, "STRIPE__SECRET_KEY")

        self.config = config
        stripe.api_key = config.secret_key
        if config.api_version:
            stripe.api_version = config.api_version

    async def create_customer(self, *, user_id: str, email: str | None) -> str:
        params: dict[str, Any] = {"metadata": {METADATA_USER_ID_KEY: user_id}}
        if email:
            params["email"] = email
        customer = await asyncio.to_thread(stripe.Customer.create, **params)
        return str(customer.id)

    async def fetch_customer_user_id(self, customer_id: str) -> str | None:
        customer = _to_dict(await asyncio.to_thread(stripe.Customer.retrieve, customer_id))
        if customer.get("deleted"):
            return None
        metadata = customer.get("metadata") or {}
        user_id = metadata.get(METADATA_USER_ID_KEY)
        return str(user_id) if user_id else None

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        coupon_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "billing_address_collection": "auto",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": {METADATA_USER_ID_KEY: user_id},
            "subscription_data": {"metadata": {METADATA_USER_ID_KEY: user_id}},
            "success_url": success_url or self.config.checkout_success_url,
            "cancel_url": cancel_url or self.config.checkout_cancel_url,
        }
        # Stripe rejects discounts combined with allow_promotion_codes
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        else:
            params["allow_promotion_codes"] = True

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        if not session.url:
            raise ValueError("Stripe did not return a redirect URL")
        return {"id": session.id, "url": session.url}

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        session = await asyncio.to_thread(
            stripe.checkout.Session.retrieve, session_id, expand=["subscription"]
        )
        return _to_dict(session)

    async def create_portal_session(
        self, *, customer_id: str, return_url: str | None = None
    ) -> dict[str, str]:
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url or self.config.portal_return_url,
        )
        return {"id": session.id, "url": session.url}

    async def upgrade_subscription(self, subscription_id: str, price_id: str) -> SubscriptionSnapshot:
        """Swap the subscription's first item to ``price_id`` with prorations."""
        current = _to_dict(
            await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, expand=["items.data.price"]
            )
        )
        item = _first_item(current.get("items"))
        if not item.get("id"):
            raise ValueError("Stripe subscription has no items")

        updated = await asyncio.to_thread(
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item["id"], "price": price_id}],
            proration_behavior="create_prorations",
        )
        return self.subscription_snapshot_from_object(updated)

    async def list_payments(self, customer_id: str) -> list[dict[str, Any]]:
        page = _to_dict(
            await asyncio.to_thread(
                stripe.PaymentIntent.list,
                customer=customer_id,
                limit=self.config.history_limit,
                expand=["data.latest_charge"],
            )
        )
        payments = []
        for intent in page.get("data", []):
            charge = intent.get("latest_charge")
            receipt_url = charge.get("receipt_url") if isinstance(charge, dict) else None
            payments.append(
                {
                    "id": intent.get("id"),
                    "amount": intent.get("amount"),
                    "currency": intent.get("currency"),
                    "status": intent.get("status"),
                    "created": intent.get("created"),
                    "receipt_url": receipt_url,
                }
            )
        return payments

    async def summarize_revenue(self, created_gte: int) -> RevenueSummary:
        """Net revenue and payment count from balance transactions since ``created_gte``."""
        total_net = 0
        payments_count = 0
        currency: str | None = None
        starting_after: str | None = None

        while True:
            params: dict[str, Any] = {"limit": 100, "created": {"gte": created_gte}}
            if starting_after:
                params["starting_after"] = starting_after
            page = _to_dict(await asyncio.to_thread(stripe.BalanceTransaction.list, **params))
            transactions = page.get("data") or []

            for transaction in transactions:
                if transaction.get("type") not in REVENUE_TRANSACTION_TYPES:
                    continue
                total_net += int(transaction.get("net") or 0)
                payments_count += 1
                currency = currency or transaction.get("currency")

            if not page.get("has_more") or not transactions:
                break
            starting_after = transactions[-1].get("id")

        return RevenueSummary(
            amount=total_net, currency=currency or "usd", payments_count=payments_count
        )

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        require(self.config.webhook_secret, "STRIPE__WEBHOOK_SECRET")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _to_dict(event)

    async def fetch_subscription_snapshot(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return self.subscription_snapshot_from_object(subscription)

    def subscription_snapshot_from_object(self, subscription_obj: dict | Any) -> SubscriptionSnapshot:
        subscription = _to_dict(subscription_obj)

        customer_id = _ref_id(subscription.get("customer"))
        if not customer_id:
            raise ValueError("Stripe subscription is missing customer id")

        item = _first_item(subscription.get("items"))
        price_id = (item.get("price") or {}).get("id")

        # Newer API versions report the billing period on the items
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        return SubscriptionSnapshot(
            subscription_id=str(subscription.get("id", "")),
            customer_id=customer_id,
            status=str(subscription.get("status", "")),
            price_id=str(price_id) if price_id else None,
            current_period_start=int(period_start or 0),
            current_period_end=int(period_end or 0),
            metadata=dict(subscription.get("metadata") or {}),
        )

    def invoice_snapshot_from_object(self, invoice_obj: dict | Any) -> InvoiceSnapshot:
        invoice = _to_dict(invoice_obj)
        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        legacy_details = invoice.get("subscription_details") or {}

        customer_id = _ref_id(invoice.get("customer"))
        subscription_id = _ref_id(invoice.get("subscription")) or _ref_id(
            parent_details.get("subscription")
        )
        if not customer_id or not subscription_id:
            raise ValueError("Stripe invoice is missing customer or subscription id")

        line = _first_item(invoice.get("lines"))
        period = line.get("period") or {}
        price_id = (line.get("price") or {}).get("id") or (
            (line.get("pricing") or {}).get("price_details") or {}
        ).get("price")

        coupon_ids: list[str] = []
        discount = invoice.get("discount") or {}
        if isinstance(discount, dict) and discount.get("coupon"):
            coupon_ids.append(str(_ref_id(discount["coupon"])))
        for entry in invoice.get("discounts") or []:
            if isinstance(entry, dict) and entry.get("coupon"):
                coupon_ids.append(str(_ref_id(entry["coupon"])))

        metadata: dict[str, Any] = {}
        for source in (
            line.get("metadata"),
            legacy_details.get("metadata"),
            parent_details.get("metadata"),
            invoice.get("metadata"),
        ):
            metadata.update(source or {})

        return InvoiceSnapshot(
            invoice_id=str(invoice.get("id", "")),
            customer_id=customer_id,
            subscription_id=subscription_id,
            price_id=str(price_id) if price_id else None,
            period_start=int(period.get("start") or 0),
            period_end=int(period.get("end") or 0),
            amount_paid=int(invoice.get("amount_paid") or 0),
            currency=str(invoice.get("currency") or "eur"),
            customer_email=invoice.get("customer_email"),
            coupon_ids=coupon_ids,
            metadata=metadata,
        )
