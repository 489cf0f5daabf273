"""Billing API endpoints."""

from typing import Annotated

import stripe
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from studio.api.v1.deps import (
    get_billing_events,
    get_identity_store,
    get_quota_service,
    get_stripe_service,
)
from studio.auth import CurrentUser
from studio.config import ConfigurationError
from studio.constants import (
    METADATA_USER_ID_KEY,
    REFERRAL_COUPON_ID_KEY,
    REFERRAL_COUPON_REDEEMED_KEY,
)
from studio.models.billing import BillingEventKind, BillingStatus, PlanCode
from studio.services.billing_events import BillingEventProcessor
from studio.services.identity_store import IdentityStore
from studio.services.quota_service import QuotaService
from studio.services.stripe_service import StripeService, _ref_id

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

Quota = Annotated[QuotaService, Depends(get_quota_service)]
StripeApi = Annotated[StripeService, Depends(get_stripe_service)]
Identity = Annotated[IdentityStore, Depends(get_identity_store)]


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    plan_code: PlanCode = Field(description="Requested paid plan")
    success_url: str | None = Field(default=None, description="Optional override URL")
    cancel_url: str | None = Field(default=None, description="Optional override URL")


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    checkout_url: str
    session_id: str


class CheckoutConfirmRequest(BaseModel):
    """Completed checkout session to synchronise."""

    session_id: str = Field(min_length=1)


class CheckoutConfirmResponse(BaseModel):
    """Subscription state after a confirmed checkout."""

    status: str
    price_id: str
    quota_limit: int


class PortalRequest(BaseModel):
    """Customer portal request."""

    return_url: str | None = None


class PortalResponse(BaseModel):
    """Customer portal response."""

    portal_url: str


class Payment(BaseModel):
    """One payment intent with its receipt."""

    id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    created: int | None = None
    receipt_url: str | None = None


class PaymentHistoryResponse(BaseModel):
    """Recent payments for the authenticated user."""

    payments: list[Payment]


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _stripe_error(e: stripe.StripeError) -> HTTPException:
    return HTTPException(status_code=400, detail=e.user_message or str(e))


async def _pending_referral_coupon(identity_store: IdentityStore, user_id: str) -> str | None:
    try:
        user = await identity_store.get_user(user_id)
    except Exception as e:
        logger.warning("referral_coupon_lookup_failed", user_id=user_id, error=str(e))
        return None
    coupon_id = user.metadata.get(REFERRAL_COUPON_ID_KEY)
    if not isinstance(coupon_id, str) or not coupon_id:
        return None
    if user.metadata.get(REFERRAL_COUPON_REDEEMED_KEY) is True:
        return None
    return coupon_id


@router.get("/status", response_model=BillingStatus)
async def billing_status(user: CurrentUser, quota_service: Quota) -> BillingStatus:
    """Return plan and quota usage for the authenticated user."""
    return await quota_service.get_status(user.id)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: CurrentUser,
    quota_service: Quota,
    stripe_service: StripeApi,
    identity_store: Identity,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid plan."""
    price_id = quota_service.plans.price_for_plan(body.plan_code)
    if body.plan_code == PlanCode.FREE or not price_id:
        raise HTTPException(status_code=400, detail="Invalid plan for checkout")

    record = await quota_service.get_subscription(user.id)
    customer_id = record.stripe_customer_id if record else None

    try:
        if not customer_id:
            customer_id = await stripe_service.create_customer(user_id=user.id, email=user.email)
            await quota_service.ensure_subscription_row(
                user.id, {"stripe_customer_id": customer_id}
            )
            logger.info("stripe_customer_created", user_id=user.id, customer_id=customer_id)

        checkout = await stripe_service.create_checkout_session(
            user_id=user.id,
            customer_id=customer_id,
            price_id=price_id,
            coupon_id=await _pending_referral_coupon(identity_store, user.id),
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except stripe.StripeError as e:
        raise _stripe_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return CheckoutResponse(checkout_url=checkout["url"], session_id=checkout["id"])


@router.post("/checkout/confirm", response_model=CheckoutConfirmResponse)
async def confirm_checkout_session(
    body: CheckoutConfirmRequest,
    user: CurrentUser,
    quota_service: Quota,
    stripe_service: StripeApi,
) -> CheckoutConfirmResponse:
    """Synchronise the subscription right after the checkout redirect.

    Covers the window before the webhook arrives; both paths converge on the
    same record.
    """
    try:
        session = await stripe_service.retrieve_checkout_session(body.session_id.strip())
        subscription = session.get("subscription")
        owner = (session.get("metadata") or {}).get(METADATA_USER_ID_KEY)
        if not owner and isinstance(subscription, dict):
            owner = (subscription.get("metadata") or {}).get(METADATA_USER_ID_KEY)
        if owner and owner != user.id:
            raise HTTPException(status_code=403, detail="This session does not belong to your account.")

        subscription_id = _ref_id(subscription)
        if not subscription_id:
            raise HTTPException(
                status_code=400, detail="Unable to resolve subscription from checkout session."
            )
        snapshot = await stripe_service.fetch_subscription_snapshot(subscription_id)
    except stripe.StripeError as e:
        raise _stripe_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not snapshot.price_id:
        raise HTTPException(status_code=400, detail="Subscription is missing price information.")

    record = await quota_service.apply_subscription_snapshot(user.id, snapshot)
    return CheckoutConfirmResponse(
        status=record.status,
        price_id=snapshot.price_id,
        quota_limit=record.quota_limit,
    )


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    body: PortalRequest,
    user: CurrentUser,
    quota_service: Quota,
    stripe_service: StripeApi,
) -> PortalResponse:
    """Create a Stripe Customer Portal session."""
    record = await quota_service.get_subscription(user.id)
    customer_id = record.stripe_customer_id if record else None
    if not customer_id:
        raise HTTPException(status_code=400, detail="Stripe customer not found")

    try:
        portal = await stripe_service.create_portal_session(
            customer_id=customer_id,
            return_url=body.return_url,
        )
    except stripe.StripeError as e:
        raise _stripe_error(e)
    return PortalResponse(portal_url=portal["url"])


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    user: CurrentUser,
    quota_service: Quota,
    stripe_service: StripeApi,
) -> PaymentHistoryResponse:
    """Return the most recent payments with receipt links."""
    record = await quota_service.get_subscription(user.id)
    if record is None or not record.stripe_customer_id:
        return PaymentHistoryResponse(payments=[])

    try:
        payments = await stripe_service.list_payments(record.stripe_customer_id)
    except stripe.StripeError as e:
        raise _stripe_error(e)
    return PaymentHistoryResponse(payments=[Payment.model_validate(p) for p in payments])


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    quota_service: Quota,
    stripe_service: StripeApi,
    processor: Annotated[BillingEventProcessor, Depends(get_billing_events)],
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify, deduplicate and apply a Stripe webhook event."""
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ConfigurationError as e:
        logger.error("stripe_webhook_secret_missing", error=str(e))
        raise HTTPException(status_code=400, detail="Webhook secret not configured")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", ""))
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event has no ID")

    event_type = str(event.get("type", ""))
    structlog.contextvars.bind_contextvars(stripe_event_id=event_id, stripe_event_type=event_type)

    is_new = await quota_service.process_webhook_event_id(event_id)
    if not is_new:
        logger.info("stripe_webhook_duplicate")
        return WebhookResponse(received=True, processed=False)

    kind = BillingEventKind.from_stripe_type(event_type)
    if kind is None:
        logger.info("stripe_webhook_ignored")
        return WebhookResponse(received=True, processed=False)

    data_object = (event.get("data") or {}).get("object") or {}
    try:
        processed = await processor.apply_billing_event(kind, data_object)
    except Exception:
        # Unmark so Stripe's retry of this event is applied instead of skipped
        logger.exception("stripe_webhook_apply_failed", kind=kind.value)
        await quota_service.release_webhook_event_id(event_id)
        raise

    logger.info("stripe_webhook_processed", kind=kind.value, applied=processed)
    return WebhookResponse(received=True, processed=processed)
