"""
Payment API endpoints.
Handles subscription plan listing and Stripe checkout session creation.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import List, Optional

from app.database import get_db
from app.models.user import User
from app.auth.dependencies import get_current_user
from app.services.stripe_service import stripe_service

router = APIRouter()


# ============= Request/Response Schemas =============

class PlanResponse(BaseModel):
    """Response schema for a subscription plan."""
    key: str
    name: str
    credits_per_period: int
    price_id: Optional[str] = None


class PlansListResponse(BaseModel):
    """Response schema for listing all plans."""
    plans: List[PlanResponse]


class CreateCheckoutRequest(BaseModel):
    """Request schema for creating a checkout session."""
    plan: str = Field(..., description="Plan key (basic or pro)")
    success_url: str = Field(..., description="URL to redirect after successful payment")
    cancel_url: str = Field(..., description="URL to redirect if payment is cancelled")


class CheckoutResponse(BaseModel):
    """Response schema for checkout session."""
    checkout_url: str
    session_id: str
    expires_at: Optional[int] = None


# ============= Endpoints =============

@router.get("/plans", response_model=PlansListResponse)
async def list_plans():
    """
    Get the subscription plans that have a configured Stripe price.
    No authentication required.
    """
    return PlansListResponse(plans=stripe_service.get_plans())


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Create a Stripe Checkout Session for a subscription.

    Requires authentication. Returns a URL to redirect the user
    to Stripe's hosted checkout page.
    """
    try:
        result = await stripe_service.create_checkout_session(
            db=db,
            user_id=current_user.id,
            plan_key=request.plan,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
        return CheckoutResponse(**result)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
