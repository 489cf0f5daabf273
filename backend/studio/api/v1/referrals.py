"""Referral programme endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from studio.api.v1.deps import get_referral_service
from studio.auth import CurrentUser
from studio.models.referrals import ReferralSummary
from studio.services.referral_service import (
    ReferralError,
    ReferralService,
    UnknownReferralCode,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])

Referrals = Annotated[ReferralService, Depends(get_referral_service)]


class ClaimRequest(BaseModel):
    code: str | None = None


class ClaimResponse(BaseModel):
    applied: bool
    message: str
    reward: int = 0


@router.get("/code", response_model=ReferralSummary)
async def referral_code(user: CurrentUser, referrals: Referrals) -> ReferralSummary:
    """Return (allocating on first call) the user's referral code and credits."""
    return await referrals.get_referral_summary(user.id)


@router.post("/claim", response_model=ClaimResponse)
async def claim_referral(body: ClaimRequest, user: CurrentUser, referrals: Referrals) -> ClaimResponse:
    """Apply a referral code once per account."""
    try:
        result = await referrals.claim_referral(user.id, body.code)
    except UnknownReferralCode as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReferralError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.applied:
        return ClaimResponse(applied=False, message="Referral reward already applied.")
    return ClaimResponse(
        applied=True,
        message="Referral applied. Thanks for joining!",
        reward=result.reward,
    )
