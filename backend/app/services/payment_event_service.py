"""
Stripe webhook event processing.

Every event is deduplicated by event id. Subscription invoices are also
deduplicated by invoice id, with the ProcessedInvoice row written in the same
transaction as the credit grant, the plan update and the event record. Either
all of it commits or none of it does.
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit_ledger import LedgerReason
from app.models.stripe_event import ProcessedInvoice, ProcessedStripeEvent
from app.models.user import User
from app.services.credit_service import CreditService
from app.services.stripe_service import SubscriptionPlan, get_plan_by_price
from app.utils.logging import log_stripe_event
from app.utils.metrics import credits_granted_total, stripe_events_total

logger = logging.getLogger(__name__)

INVOICE_EVENTS = ("invoice.paid", "invoice.payment_succeeded")

# Outcomes recorded on ProcessedStripeEvent
OUTCOME_GRANTED = "granted"
OUTCOME_LINKED = "linked"
OUTCOME_CANCELED = "canceled"
OUTCOME_SKIPPED = "skipped"
OUTCOME_IGNORED = "ignored"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_DUPLICATE = "duplicate"


def _get(obj: Any, *path: str) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_line(invoice: Dict[str, Any]) -> Dict[str, Any]:
    lines = _get(invoice, "lines", "data")
    if isinstance(lines, list) and lines and isinstance(lines[0], dict):
        return lines[0]
    return {}


def extract_price_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Price id of the first invoice line across Stripe API versions."""
    line = _first_line(invoice)
    candidates = (
        _get(line, "price", "id"),
        _get(line, "pricing", "price_details", "price"),
        _get(line, "plan", "id"),
        line.get("price") if isinstance(line.get("price"), str) else None,
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def extract_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription") or _get(
        invoice, "parent", "subscription_details", "subscription"
    )
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or None


def extract_metadata_user_id(invoice: Dict[str, Any]) -> Optional[str]:
    return (
        _get(invoice, "subscription_details", "metadata", "user_id")
        or _get(invoice, "parent", "subscription_details", "metadata", "user_id")
        or _get(invoice, "metadata", "user_id")
    )


def extract_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    period_end = _get(_first_line(invoice), "period", "end") or invoice.get("period_end")
    if isinstance(period_end, (int, float)):
        return datetime.utcfromtimestamp(period_end)
    return None


async def _find_user_by_customer(db: AsyncSession, customer_id: Optional[str]) -> Optional[User]:
    if not customer_id:
        return None
    result = await db.execute(select(User).where(User.stripe_customer_id == customer_id))
    return result.scalar_one_or_none()


async def _find_user(db: AsyncSession, user_id: Optional[str]) -> Optional[User]:
    if not user_id:
        return None
    result = await db.execute(select(User).where(User.id == str(user_id)))
    return result.scalar_one_or_none()


async def clear_plan(db: AsyncSession, user_id: str) -> None:
    """
    Clear plan and renewal fields. Credits and ledger are left untouched.
    Does not commit.
    """
    now = datetime.utcnow()
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            active_plan=None,
            credits_renew_at=None,
            subscription_status="canceled",
            canceled_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


HandlerResult = Tuple[str, Dict[str, Any]]
Handler = Callable[[AsyncSession, str, Dict[str, Any]], Awaitable[HandlerResult]]


class PaymentEventService:
    """Applies verified Stripe events to users and credits."""

    @staticmethod
    async def is_processed(db: AsyncSession, event_id: str) -> bool:
        result = await db.execute(
            select(ProcessedStripeEvent.event_id).where(ProcessedStripeEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def is_invoice_processed(db: AsyncSession, invoice_id: str) -> bool:
        result = await db.execute(
            select(ProcessedInvoice.invoice_id).where(ProcessedInvoice.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def process_event(db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one verified event.

        Returns:
            Dict with the outcome under "status" plus handler details

        Raises:
            Exception: Anything unexpected after rollback, so Stripe redelivers
        """
        event_id = event["id"]
        event_type = event["type"]
        data_object = _get(event, "data", "object") or {}

        if await PaymentEventService.is_processed(db, event_id):
            return PaymentEventService._report(event_id, event_type, OUTCOME_DUPLICATE, {})

        handler = _HANDLERS.get(event_type)
        try:
            if handler is None:
                outcome, details = OUTCOME_IGNORED, {}
            else:
                outcome, details = await handler(db, event_id, data_object)

            db.add(ProcessedStripeEvent(event_id=event_id, event_type=event_type, outcome=outcome))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            outcome, details = await PaymentEventService._resolve_conflict(
                db, event_id, event_type, data_object
            )
        except Exception:
            await db.rollback()
            stripe_events_total.labels(event_type=event_type, outcome="error").inc()
            logger.error(f"Failed to process Stripe event {event_id} ({event_type})", exc_info=True)
            raise

        if outcome == OUTCOME_GRANTED:
            credits_granted_total.labels(reason=LedgerReason.SUBSCRIPTION_RENEWAL.value).inc(
                details.get("credits_granted", 0)
            )
        return PaymentEventService._report(event_id, event_type, outcome, details)

    @staticmethod
    async def _resolve_conflict(
        db: AsyncSession,
        event_id: str,
        event_type: str,
        data_object: Dict[str, Any],
    ) -> HandlerResult:
        """
        A unique constraint fired: a concurrent delivery of the same event or
        of another event for the same invoice committed first.
        """
        if await PaymentEventService.is_processed(db, event_id):
            return OUTCOME_DUPLICATE, {}

        invoice_id = data_object.get("id")
        if event_type in INVOICE_EVENTS and invoice_id and await PaymentEventService.is_invoice_processed(db, invoice_id):
            db.add(ProcessedStripeEvent(event_id=event_id, event_type=event_type, outcome=OUTCOME_ALREADY_PROCESSED))
            await db.commit()
            return OUTCOME_ALREADY_PROCESSED, {"invoice_id": invoice_id}

        raise RuntimeError(f"Unresolvable constraint violation for Stripe event {event_id}")

    @staticmethod
    def _report(event_id: str, event_type: str, outcome: str, details: Dict[str, Any]) -> Dict[str, Any]:
        stripe_events_total.labels(event_type=event_type, outcome=outcome).inc()
        log_stripe_event(
            logger,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            user_id=details.get("user_id"),
        )
        return {"status": outcome, "event_id": event_id, **details}

    @staticmethod
    async def handle_invoice_paid(db: AsyncSession, event_id: str, invoice: Dict[str, Any]) -> HandlerResult:
        """
        Grant the plan's credits for a paid subscription invoice, once per invoice.
        Nothing is committed here.
        """
        invoice_id = invoice.get("id")
        if not invoice_id:
            logger.warning(f"Invoice event {event_id} has no invoice id")
            return OUTCOME_SKIPPED, {"reason": "missing_invoice_id"}

        if await PaymentEventService.is_invoice_processed(db, invoice_id):
            return OUTCOME_ALREADY_PROCESSED, {"invoice_id": invoice_id}

        price_id = extract_price_id(invoice)
        plan: Optional[SubscriptionPlan] = get_plan_by_price(price_id)
        if plan is None:
            logger.warning(f"Invoice {invoice_id} has unknown price {price_id}, skipping")
            return OUTCOME_SKIPPED, {"reason": "unknown_price", "invoice_id": invoice_id}

        customer_id = invoice.get("customer")
        user = await _find_user_by_customer(db, customer_id)
        link_customer = False
        if user is None:
            user = await _find_user(db, extract_metadata_user_id(invoice))
            link_customer = bool(user is not None and customer_id and not user.stripe_customer_id)
        if user is None:
            logger.warning(f"Invoice {invoice_id} customer {customer_id} matches no user, skipping")
            return OUTCOME_SKIPPED, {"reason": "user_not_found", "invoice_id": invoice_id}

        user_id = user.id
        db.add(ProcessedInvoice(
            invoice_id=invoice_id,
            user_id=user_id,
            event_id=event_id,
            plan=plan.key,
            credits_granted=plan.credits_per_period,
        ))
        await db.flush()

        await CreditService.grant(
            db,
            user_id,
            plan.credits_per_period,
            LedgerReason.SUBSCRIPTION_RENEWAL,
            related_id=invoice_id,
            plan=plan.key,
            commit=False,
        )

        plan_values: Dict[str, Any] = {
            "active_plan": plan.key,
            "subscription_status": "active",
            "credits_renew_at": extract_period_end(invoice),
            "canceled_at": None,
            "updated_at": datetime.utcnow(),
        }
        subscription_id = extract_subscription_id(invoice)
        if subscription_id:
            plan_values["stripe_subscription_id"] = subscription_id
        if link_customer:
            plan_values["stripe_customer_id"] = customer_id
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(**plan_values)
            .execution_options(synchronize_session=False)
        )

        return OUTCOME_GRANTED, {
            "user_id": user_id,
            "invoice_id": invoice_id,
            "plan": plan.key,
            "credits_granted": plan.credits_per_period,
        }

    @staticmethod
    async def handle_checkout_completed(db: AsyncSession, event_id: str, session: Dict[str, Any]) -> HandlerResult:
        """Link the Stripe customer and subscription to the local user."""
        user_id = session.get("client_reference_id") or _get(session, "metadata", "user_id")
        user = await _find_user(db, user_id)
        if user is None:
            logger.warning(f"Checkout session {session.get('id')} has no matching user ({user_id}), skipping")
            return OUTCOME_SKIPPED, {"reason": "user_not_found"}

        customer_id = session.get("customer")
        if customer_id:
            owner = await _find_user_by_customer(db, customer_id)
            if owner is not None and owner.id != user.id:
                logger.warning(
                    f"Checkout session {session.get('id')}: customer {customer_id} already belongs to "
                    f"user {owner.id}, not linking to {user.id}"
                )
                return OUTCOME_SKIPPED, {"reason": "customer_already_linked", "user_id": user.id}

        values: Dict[str, Any] = {"updated_at": datetime.utcnow()}
        if customer_id:
            values["stripe_customer_id"] = customer_id
        if session.get("subscription"):
            values["stripe_subscription_id"] = session["subscription"]
        await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return OUTCOME_LINKED, {"user_id": user.id}

    @staticmethod
    async def handle_subscription_deleted(db: AsyncSession, event_id: str, subscription: Dict[str, Any]) -> HandlerResult:
        """Clear plan state. Granted credits stay spendable."""
        user = await _find_user_by_customer(db, subscription.get("customer"))
        if user is None and subscription.get("id"):
            result = await db.execute(
                select(User).where(User.stripe_subscription_id == subscription["id"])
            )
            user = result.scalar_one_or_none()
        if user is None:
            logger.warning(f"Subscription {subscription.get('id')} matches no user, skipping")
            return OUTCOME_SKIPPED, {"reason": "user_not_found"}

        await clear_plan(db, user.id)
        return OUTCOME_CANCELED, {"user_id": user.id}


_HANDLERS: Dict[str, Handler] = {
    "invoice.paid": PaymentEventService.handle_invoice_paid,
    "invoice.payment_succeeded": PaymentEventService.handle_invoice_paid,
    "checkout.session.completed": PaymentEventService.handle_checkout_completed,
    "customer.subscription.deleted": PaymentEventService.handle_subscription_deleted,
}
