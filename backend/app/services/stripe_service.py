"""
Stripe service for payment processing.
Handles subscription plans, checkout session creation and webhook
signature verification.
"""
import json
import stripe
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import settings
from app.models.user import User

logger = logging.getLogger(__name__)


class InvalidStripeEvent(Exception):
    """Webhook body failed signature verification or could not be parsed."""


@dataclass
class SubscriptionPlan:
    """A subscription tier and the credits each paid invoice grants."""
    key: str
    name: str
    credits_per_period: int
    price_setting: str  # Settings attribute holding the Stripe price id

    @property
    def price_id(self) -> Optional[str]:
        return getattr(settings, self.price_setting)


# Available subscription plans
SUBSCRIPTION_PLANS: List[SubscriptionPlan] = [
    SubscriptionPlan(
        key="basic",
        name="Basic",
        credits_per_period=30,
        price_setting="stripe_price_basic",
    ),
    SubscriptionPlan(
        key="pro",
        name="Pro",
        credits_per_period=100,
        price_setting="stripe_price_pro",
    ),
]


def get_plan(plan_key: str) -> Optional[SubscriptionPlan]:
    for plan in SUBSCRIPTION_PLANS:
        if plan.key == plan_key:
            return plan
    return None


def get_plan_by_price(price_id: Optional[str]) -> Optional[SubscriptionPlan]:
    """Map a Stripe price id to a plan. Unconfigured plans never match."""
    if not price_id:
        return None
    for plan in SUBSCRIPTION_PLANS:
        if plan.price_id and plan.price_id == price_id:
            return plan
    return None


def _ensure_api_key() -> None:
    if not stripe.api_key or stripe.api_key != settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key


class StripeService:
    """Service for Stripe payment operations."""

    def __init__(self):
        """Initialize Stripe with API key."""
        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key
            logger.info("Stripe initialized with secret key")
        else:
            logger.warning("Stripe secret key not configured")

    @staticmethod
    def get_plans() -> List[Dict[str, Any]]:
        """Plans that have a configured Stripe price."""
        return [
            {
                "key": plan.key,
                "name": plan.name,
                "credits_per_period": plan.credits_per_period,
                "price_id": plan.price_id,
            }
            for plan in SUBSCRIPTION_PLANS
            if plan.price_id
        ]

    @staticmethod
    async def create_checkout_session(
        db: AsyncSession,
        user_id: str,
        plan_key: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Create a Stripe Checkout Session for a subscription.

        client_reference_id and metadata.user_id carry the local user id so
        checkout.session.completed can link the Stripe customer.

        Returns:
            Dict with checkout_url, session_id and expires_at

        Raises:
            ValueError: If Stripe or the plan is not configured, or the user is missing
        """
        if not settings.stripe_secret_key:
            raise ValueError("Stripe is not configured")

        plan = get_plan(plan_key)
        if not plan or not plan.price_id:
            raise ValueError(f"Plan '{plan_key}' not found")

        result = await db.execute(
            select(User).where(User.id == user_id)
        )
        user = result.scalar_one_or_none()
        if not user:
            raise ValueError("User not found")

        _ensure_api_key()
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": plan.price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(user_id),
            "metadata": {"user_id": str(user_id), "plan": plan.key},
            "subscription_data": {"metadata": {"user_id": str(user_id), "plan": plan.key}},
        }
        if user.stripe_customer_id:
            params["customer"] = user.stripe_customer_id
        elif user.email:
            params["customer_email"] = user.email

        try:
            checkout_session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            error_msg = f"Stripe API error: {str(e)}"
            if getattr(e, "user_message", None):
                error_msg = f"{error_msg} - {e.user_message}"
            logger.error(f"Stripe error creating checkout session: {error_msg}")
            raise ValueError(error_msg)

        logger.info(f"Created checkout session {checkout_session.id} for user {user_id}, plan {plan.key}")
        return {
            "checkout_url": checkout_session.url,
            "session_id": checkout_session.id,
            "expires_at": checkout_session.expires_at,
        }

    @staticmethod
    def verify_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe-Signature header against the raw body, then parse it.

        Returns:
            The event as a plain dict

        Raises:
            InvalidStripeEvent: Missing/invalid signature or malformed JSON
            ValueError: If the webhook secret is not configured
        """
        if not settings.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise InvalidStripeEvent("Missing Stripe signature")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidStripeEvent(f"Invalid payload: {e}") from e

        try:
            stripe.WebhookSignature.verify_header(text, signature, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidStripeEvent(f"Invalid signature: {e}") from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise InvalidStripeEvent(f"Invalid payload: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidStripeEvent("Invalid payload: event id or type missing")
        return event


# Global service instance
stripe_service = StripeService()
