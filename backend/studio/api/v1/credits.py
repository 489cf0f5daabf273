"""Credit balance endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from studio.api.v1.deps import get_credit_ledger
from studio.auth import AdminUser, CurrentUser
from studio.services.credit_ledger import CreditLedger, InvalidCreditAmount

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

Ledger = Annotated[CreditLedger, Depends(get_credit_ledger)]


class BalanceResponse(BaseModel):
    balance: int


class GrantRequest(BaseModel):
    """Admin grant of bonus credits to another user."""

    user_id: str = ""
    amount: float = Field(default=0, description="Positive number of credits; fractions are floored")


@router.get("/balance", response_model=BalanceResponse)
async def credit_balance(user: CurrentUser, ledger: Ledger) -> BalanceResponse:
    return BalanceResponse(balance=await ledger.get_balance(user.id))


@router.post("/grant", response_model=BalanceResponse)
async def grant_credits(body: GrantRequest, admin: AdminUser, ledger: Ledger) -> BalanceResponse:
    """Add credits to a user's balance (admins only)."""
    target_user_id = body.user_id.strip()
    if not target_user_id:
        raise HTTPException(status_code=400, detail="A user identifier is required.")

    try:
        balance = await ledger.add_credits(target_user_id, body.amount)
    except InvalidCreditAmount as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "credits_granted",
        admin_id=admin.id,
        user_id=target_user_id,
        amount=body.amount,
        balance=balance,
    )
    return BalanceResponse(balance=balance)
