"""Subscription maintenance endpoints."""

from typing import Annotated

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from studio.api.v1.deps import get_quota_service, get_stripe_service
from studio.auth import CurrentUser
from studio.models.billing import PlanCode
from studio.services.quota_service import QuotaService
from studio.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class EnsureResponse(BaseModel):
    ensured: bool


class UpgradeResponse(BaseModel):
    message: str
    status: str | None = None
    quota_limit: int | None = None


@router.post("/ensure", response_model=EnsureResponse)
async def ensure_subscription(
    user: CurrentUser,
    quota_service: Annotated[QuotaService, Depends(get_quota_service)],
) -> EnsureResponse:
    """Create the free-tier row on first login; existing rows are left untouched."""
    await quota_service.ensure_subscription_row(user.id)
    return EnsureResponse(ensured=True)


@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    user: CurrentUser,
    quota_service: Annotated[QuotaService, Depends(get_quota_service)],
    stripe_service: Annotated[StripeService, Depends(get_stripe_service)],
) -> UpgradeResponse:
    """Move an existing paid subscription to the Pro price with prorations."""
    pro_price_id = quota_service.plans.price_for_plan(PlanCode.PRO)
    if not pro_price_id:
        raise HTTPException(status_code=503, detail="Pro plan is not configured")

    record = await quota_service.get_subscription(user.id)
    if record is None or not record.stripe_subscription_id:
        raise HTTPException(
            status_code=400,
            detail="No active subscription found. Subscribe to a plan first.",
        )

    if record.stripe_price_id == pro_price_id:
        return UpgradeResponse(message="You are already on the Pro plan.")

    try:
        snapshot = await stripe_service.upgrade_subscription(
            record.stripe_subscription_id, pro_price_id
        )
    except stripe.StripeError as e:
        raise HTTPException(status_code=400, detail=e.user_message or str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    updated = await quota_service.upsert_subscription_for_user(
        user.id,
        {
            "stripe_price_id": pro_price_id,
            "status": snapshot.status,
            "quota_limit": quota_service.resolve_quota_limit(pro_price_id),
        },
    )
    logger.info("subscription_upgraded", user_id=user.id, price_id=pro_price_id)
    return UpgradeResponse(
        message="Your subscription is being upgraded to the Pro plan.",
        status=updated.status,
        quota_limit=updated.quota_limit,
    )
