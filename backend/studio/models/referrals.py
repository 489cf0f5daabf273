"""Referral programme models."""

from pydantic import BaseModel


class ReferralClaimResult(BaseModel):
    """Outcome of a referral claim."""

    applied: bool
    reward: int = 0
    referrer_id: str | None = None


class ReferralSummary(BaseModel):
    """Referral information shown to a user."""

    code: str
    credits: int
    referred_by: str | None = None
