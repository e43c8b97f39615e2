"""
Webhook endpoints for external services.
Handles Stripe subscription events and Kie.ai (Veo) completion callbacks.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Header
from sqlalchemy.ext.asyncio import AsyncSession
import json
import logging

from app.api.dependencies import get_provider_gateway, get_reconciler
from app.config import settings
from app.database import get_db
from app.schemas.job import CallbackAck
from app.services.payment_event_service import PaymentEventService
from app.services.provider_gateway import CallbackPayloadError, KieGateway, ProviderError
from app.services.reconciler import CompletionReconciler
from app.services.stripe_service import InvalidStripeEvent, stripe_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_signature: str = Header(None, alias="stripe-signature")
):
    """
    Stripe webhook endpoint for subscription events.

    Handles:
    - checkout.session.completed: links the Stripe customer to the user
    - invoice.paid / invoice.payment_succeeded: grants the plan's credits
    - customer.subscription.deleted: clears plan state, keeps credits

    Security:
    - Validates Stripe signature before parsing
    - Idempotent by event id and, for invoices, by invoice id

    Answers 200 for handled and skipped events, 400 for bad signatures and
    500 when processing failed so Stripe redelivers.
    """
    body = await request.body()

    try:
        event = stripe_service.verify_event(body, stripe_signature)
    except InvalidStripeEvent as e:
        logger.error(f"Rejected Stripe webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    try:
        return await PaymentEventService.process_event(db, event)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process Stripe event"
        )


@router.post("/veo-callback", response_model=CallbackAck)
async def veo_callback(
    request: Request,
    gateway: KieGateway = Depends(get_provider_gateway),
    reconciler: CompletionReconciler = Depends(get_reconciler),
):
    """
    Kie.ai completion callback.

    Idempotent: replays and callbacks for already terminal jobs are
    acknowledged without changing state. Only a body without a task id is
    rejected.
    """
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    try:
        result = gateway.parse_callback(payload)
    except CallbackPayloadError as e:
        logger.warning(f"Rejected Veo callback: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    logger.info(
        f"Veo callback for task {result.task_id}: success={result.success}",
        extra={"event": "veo_callback", "task_id": result.task_id, "success": result.success},
    )
    outcome = await reconciler.handle_callback(result)
    return CallbackAck(task_id=outcome.task_id, status=outcome.status, applied=outcome.applied)


@router.get("/veo/status/{task_id}")
async def veo_status_probe(
    task_id: str,
    gateway: KieGateway = Depends(get_provider_gateway),
):
    """Development only: ask the provider directly for a task's status."""
    if settings.environment != "dev":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found"
        )
    try:
        result = await gateway.fetch_status(task_id)
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )
    return {
        "task_id": task_id,
        "ready": result.ready,
        "result_urls": result.result_urls,
        "resolution": result.resolution,
        "degraded": result.degraded,
    }
