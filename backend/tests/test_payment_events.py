"""
Tests for the Stripe webhook and payment event processing.
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import select, func
from unittest.mock import patch, MagicMock

from app.models.stripe_event import ProcessedInvoice, ProcessedStripeEvent
from app.models.user import User
from app.services.credit_service import CreditService
from app.services.payment_event_service import extract_price_id, extract_period_end
from tests.conftest import create_user, make_stripe_event, sign_stripe_payload


def paid_invoice(invoice_id: str = "in_1", customer: str = "cus_1", price: str = "price_basic_test", user_id=None):
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_1",
        "lines": {"data": [{"price": {"id": price}, "period": {"end": 1767225600}}]},
    }
    if user_id:
        invoice["subscription_details"] = {"metadata": {"user_id": user_id}}
    return invoice


async def post_event(client: AsyncClient, payload: str, signature: str = None):
    return await client.post(
        "/api/webhooks/stripe",
        content=payload.encode("utf-8"),
        headers={
            "content-type": "application/json",
            "stripe-signature": signature or sign_stripe_payload(payload),
        },
    )


async def link_customer(db, user: User, customer_id: str = "cus_1"):
    user = await db.get(User, user.id)
    user.stripe_customer_id = customer_id
    await db.commit()


async def count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestSignature:

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client: AsyncClient, session_factory):
        payload = make_stripe_event("evt_1", "invoice.paid", paid_invoice())

        response = await post_event(client, payload, signature=sign_stripe_payload(payload, secret="whsec_wrong"))

        assert response.status_code == 400
        assert await count(session_factory, ProcessedStripeEvent) == 0

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient):
        response = await client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_type_recorded(self, client: AsyncClient, session_factory):
        payload = make_stripe_event("evt_x", "customer.created", {"id": "cus_9"})

        response = await post_event(client, payload)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await count(session_factory, ProcessedStripeEvent) == 1


class TestInvoicePaid:

    @pytest.mark.asyncio
    async def test_grants_plan_credits(self, client: AsyncClient, db_session, session_factory, test_user: User):
        await link_customer(db_session, test_user)

        response = await post_event(client, make_stripe_event("evt_1", "invoice.paid", paid_invoice()))

        assert response.status_code == 200
        assert response.json()["status"] == "granted"
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.credits_remaining == 40
            assert user.active_plan == "basic"
            assert user.subscription_status == "active"
            assert user.stripe_subscription_id == "sub_1"
            assert user.credits_renew_at is not None
            assert await CreditService.get_ledger_balance(db, test_user.id) == 40

    @pytest.mark.asyncio
    async def test_same_event_twice_grants_once(self, client: AsyncClient, db_session, session_factory, test_user: User):
        await link_customer(db_session, test_user)
        payload = make_stripe_event("evt_1", "invoice.paid", paid_invoice())

        await post_event(client, payload)
        response = await post_event(client, payload)

        assert response.json()["status"] == "duplicate"
        async with session_factory() as db:
            assert await CreditService.get_balance(db, test_user.id) == 40

    @pytest.mark.asyncio
    async def test_same_invoice_different_events_grants_once(
        self, client: AsyncClient, db_session, session_factory, test_user: User
    ):
        await link_customer(db_session, test_user)

        first = await post_event(client, make_stripe_event("evt_1", "invoice.paid", paid_invoice()))
        second = await post_event(client, make_stripe_event("evt_2", "invoice.payment_succeeded", paid_invoice()))

        assert first.json()["status"] == "granted"
        assert second.json()["status"] == "already_processed"
        async with session_factory() as db:
            assert await CreditService.get_balance(db, test_user.id) == 40
        assert await count(session_factory, ProcessedInvoice) == 1
        assert await count(session_factory, ProcessedStripeEvent) == 2

    @pytest.mark.asyncio
    async def test_user_found_by_metadata_is_linked(self, client: AsyncClient, session_factory, test_user: User):
        invoice = paid_invoice(customer="cus_new", price="price_pro_test", user_id=test_user.id)

        response = await post_event(client, make_stripe_event("evt_1", "invoice.paid", invoice))

        assert response.json()["status"] == "granted"
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.credits_remaining == 110
            assert user.stripe_customer_id == "cus_new"
            assert user.active_plan == "pro"

    @pytest.mark.asyncio
    async def test_unknown_price_skipped(self, client: AsyncClient, db_session, session_factory, test_user: User):
        await link_customer(db_session, test_user)

        response = await post_event(
            client, make_stripe_event("evt_1", "invoice.paid", paid_invoice(price="price_unknown"))
        )

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert await count(session_factory, ProcessedInvoice) == 0
        assert await count(session_factory, ProcessedStripeEvent) == 1

    @pytest.mark.asyncio
    async def test_unknown_customer_skipped(self, client: AsyncClient, session_factory, test_user: User):
        response = await post_event(client, make_stripe_event("evt_1", "invoice.paid", paid_invoice(customer="cus_x")))

        assert response.json()["status"] == "skipped"
        async with session_factory() as db:
            assert await CreditService.get_balance(db, test_user.id) == 10

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, client: AsyncClient, db_session, session_factory, test_user: User):
        await link_customer(db_session, test_user)
        payload = make_stripe_event("evt_1", "invoice.paid", paid_invoice())

        with patch.object(CreditService, "grant", side_effect=RuntimeError("db gone")):
            response = await post_event(client, payload)

        assert response.status_code == 500
        assert await count(session_factory, ProcessedInvoice) == 0
        assert await count(session_factory, ProcessedStripeEvent) == 0
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.active_plan is None

        # Stripe's redelivery then succeeds
        retry = await post_event(client, payload)
        assert retry.json()["status"] == "granted"


class TestSubscriptionEvents:

    @pytest.mark.asyncio
    async def test_checkout_completed_links_customer(self, client: AsyncClient, session_factory, test_user: User):
        session = {
            "id": "cs_1",
            "client_reference_id": test_user.id,
            "customer": "cus_42",
            "subscription": "sub_42",
        }

        response = await post_event(client, make_stripe_event("evt_1", "checkout.session.completed", session))

        assert response.json()["status"] == "linked"
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.stripe_customer_id == "cus_42"
            assert user.stripe_subscription_id == "sub_42"

    @pytest.mark.asyncio
    async def test_checkout_for_customer_of_another_user_skipped(
        self, client: AsyncClient, db_session, session_factory, test_user: User
    ):
        other = await create_user(db_session, 0, email="other@example.com")
        await link_customer(db_session, other, "cus_dup")
        session = {
            "id": "cs_dup",
            "client_reference_id": test_user.id,
            "customer": "cus_dup",
            "subscription": "sub_dup",
        }
        payload = make_stripe_event("evt_dup", "checkout.session.completed", session)

        first = await post_event(client, payload)
        redelivery = await post_event(client, payload)

        assert first.status_code == 200
        assert first.json()["status"] == "skipped"
        assert first.json()["reason"] == "customer_already_linked"
        assert redelivery.status_code == 200
        assert redelivery.json()["status"] == "duplicate"
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.stripe_customer_id is None
            assert user.stripe_subscription_id is None
            assert (await db.get(User, other.id)).stripe_customer_id == "cus_dup"
            recorded = await db.get(ProcessedStripeEvent, "evt_dup")
            assert recorded.outcome == "skipped"

    @pytest.mark.asyncio
    async def test_subscription_deleted_keeps_credits(
        self, client: AsyncClient, db_session, session_factory, test_user: User
    ):
        await link_customer(db_session, test_user)
        await post_event(client, make_stripe_event("evt_1", "invoice.paid", paid_invoice()))

        response = await post_event(
            client,
            make_stripe_event("evt_2", "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}),
        )

        assert response.json()["status"] == "canceled"
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.active_plan is None
            assert user.subscription_status == "canceled"
            assert user.credits_remaining == 40


class TestCheckout:

    @pytest.mark.asyncio
    async def test_create_checkout_session(self, client: AsyncClient, test_user: User):
        fake_session = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1", expires_at=1767225600)

        with patch("stripe.checkout.Session.create", return_value=fake_session) as create:
            response = await client.post(
                "/api/payments/checkout",
                json={"plan": "pro", "success_url": "https://app/ok", "cancel_url": "https://app/no"},
            )

        assert response.status_code == 200
        assert response.json()["checkout_url"] == "https://checkout.stripe.com/c/cs_test_1"
        params = create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["client_reference_id"] == test_user.id
        assert params["line_items"] == [{"price": "price_pro_test", "quantity": 1}]
        assert params["customer_email"] == test_user.email


class TestExtraction:

    def test_price_id_shapes(self):
        assert extract_price_id({"lines": {"data": [{"price": {"id": "p1"}}]}}) == "p1"
        assert extract_price_id({"lines": {"data": [{"pricing": {"price_details": {"price": "p2"}}}]}}) == "p2"
        assert extract_price_id({"lines": {"data": [{"plan": {"id": "p3"}}]}}) == "p3"
        assert extract_price_id({"lines": {"data": []}}) is None

    def test_period_end(self):
        assert extract_period_end({"period_end": 0}).year == 1970
        assert extract_period_end({}) is None
