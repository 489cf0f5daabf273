"""Subscription, quota and billing event models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PlanCode(str, Enum):
    """Supported billing plans."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Known subscription statuses. The stored field stays a plain string so
    unknown provider values are mirrored verbatim."""

    FREE = "free"
    PENDING = "pending"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE_EXPIRED = "incomplete_expired"


class QuotaReason(str, Enum):
    """Reason for a generation gate decision."""

    QUOTA_AVAILABLE = "quota_available"
    QUOTA_EXHAUSTED = "quota_exhausted"


class BillingEventKind(str, Enum):
    """Billing provider notifications the reconciler reacts to."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    PAYMENT_FAILED = "payment_failed"

    @classmethod
    def from_stripe_type(cls, event_type: str) -> "BillingEventKind | None":
        return STRIPE_EVENT_KINDS.get(event_type)


STRIPE_EVENT_KINDS: dict[str, BillingEventKind] = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": BillingEventKind.INVOICE_PAID,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAID,
    "invoice.payment_failed": BillingEventKind.PAYMENT_FAILED,
}


class SubscriptionRecord(BaseModel):
    """Persisted subscription/quota state for a user (``subscriptions`` row)."""

    user_id: str
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    status: str = SubscriptionStatus.FREE.value
    current_period_start: str | None = None
    current_period_end: str | None = None
    quota_limit: int = Field(default=0, ge=0)
    quota_used: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GenerationDecision(BaseModel):
    """Outcome of the pre-generation quota check."""

    allowed: bool
    reason: QuotaReason
    quota_used: int
    quota_limit: int


class BillingStatus(BaseModel):
    """Computed billing status returned to the frontend."""

    plan_code: PlanCode
    plan_label: str
    subscription_status: str
    quota_limit: int
    quota_used: int
    quota_remaining: int
    current_period_end: str | None = None
    requires_upgrade: bool = False


class SubscriptionSnapshot(BaseModel):
    """Normalized Stripe subscription payload."""

    subscription_id: str
    customer_id: str
    status: str
    price_id: str | None = None
    current_period_start: int = 0
    current_period_end: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class InvoiceSnapshot(BaseModel):
    """Normalized Stripe invoice payload (first line item only)."""

    invoice_id: str
    customer_id: str
    subscription_id: str
    price_id: str | None = None
    period_start: int = 0
    period_end: int = 0
    amount_paid: int = 0
    currency: str = "eur"
    customer_email: str | None = None
    coupon_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RevenueSummary(BaseModel):
    """Net revenue (minor units) collected over a window."""

    amount: int = 0
    currency: str = "usd"
    payments_count: int = 0


class AdminAnalytics(BaseModel):
    """Month-to-date business metrics for the admin dashboard."""

    revenue: RevenueSummary
    payments_count: int
    active_subscriptions: int
    visitors_count: int | None = None
    conversion_rate: float | None = None
