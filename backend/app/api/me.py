"""
User profile endpoints.
Credit balance, ledger history and local subscription cancel.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from app.database import get_db
from app.models.user import User
from app.auth.dependencies import get_current_user
from app.schemas.video import CreditsResponse, LedgerEntryResponse
from app.services.credit_service import CreditService
from app.services.payment_event_service import clear_plan

router = APIRouter()


class CancelSubscriptionResponse(BaseModel):
    """Response schema for subscription cancel."""
    ok: bool
    message: str
    credits_remaining: int


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Get current credit balance and the last 50 ledger entries.
    Requires valid Firebase JWT token.
    """
    balance = await CreditService.get_balance(db, current_user.id)
    history = await CreditService.get_history(db, current_user.id, limit=50)
    return CreditsResponse(
        credits_remaining=balance,
        active_plan=current_user.active_plan,
        subscription_status=current_user.subscription_status,
        credits_renew_at=current_user.credits_renew_at,
        history=[LedgerEntryResponse.model_validate(entry) for entry in history],
    )


@router.post("/subscription/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Cancel the plan locally. Credits already granted stay spendable.
    """
    user_id = current_user.id
    await clear_plan(db, user_id)
    await db.commit()
    balance = await CreditService.get_balance(db, user_id)
    return CancelSubscriptionResponse(
        ok=True,
        message="Subscription canceled. Remaining credits stay available.",
        credits_remaining=balance,
    )
