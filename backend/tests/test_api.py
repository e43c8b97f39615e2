"""
Tests for API endpoints.
Uses httpx AsyncClient for testing FastAPI routes.
"""
import asyncio
import pytest
from httpx import AsyncClient
from unittest.mock import MagicMock

from app.models.job import JobStatus
from app.models.user import User
from app.services.credit_service import CreditService
from app.services.job_store import JobStore
from app.services.provider_gateway import ProviderError
from tests.conftest import create_user, make_callback, wait_until


class TestRootEndpoint:
    """Tests for root endpoint."""

    @pytest.mark.asyncio
    async def test_root_returns_info(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "VeoReel API"
        assert "version" in data


class TestJobEndpoints:
    """Tests for job submission and lookup."""

    @pytest.mark.asyncio
    async def test_create_job(self, client: AsyncClient, fake_gateway, registry):
        fake_gateway.release = asyncio.Event()

        response = await client.post("/api/jobs", json={"prompt": "a lighthouse at dusk"})

        assert response.status_code == 201
        data = response.json()
        assert data["task_id"] == "kie_task_1"
        assert data["status"] == "PROCESSING"
        assert fake_gateway.submit_calls[0]["callback_url"] == "https://api.veoreel.test/api/webhooks/veo-callback"
        assert registry.is_active("kie_task_1")

    @pytest.mark.asyncio
    async def test_create_job_empty_prompt(self, client: AsyncClient, fake_gateway):
        response = await client.post("/api/jobs", json={"prompt": ""})

        assert response.status_code == 422
        assert fake_gateway.submit_calls == []

    @pytest.mark.asyncio
    async def test_create_job_seed_out_of_range(self, client: AsyncClient):
        response = await client.post("/api/jobs", json={"prompt": "p", "seeds": 5})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_job_without_credits(self, client_no_credits: AsyncClient, fake_gateway):
        response = await client_no_credits.post("/api/jobs", json={"prompt": "p"})

        assert response.status_code == 402
        assert fake_gateway.submit_calls == []

    @pytest.mark.asyncio
    async def test_create_job_provider_error(self, client: AsyncClient, fake_gateway, session_factory, test_user: User):
        fake_gateway.submit_error = ProviderError("Kie.ai API error: 500")

        response = await client.post("/api/jobs", json={"prompt": "p"})

        assert response.status_code == 502
        async with session_factory() as db:
            job, _ = (await JobStore.list_for_user(db, test_user.id))[0]
            assert job.status == JobStatus.FAILED
            assert await CreditService.get_balance(db, test_user.id) == 9

    @pytest.mark.asyncio
    async def test_get_job_after_callback(self, client: AsyncClient, fake_gateway, registry):
        fake_gateway.release = asyncio.Event()
        await client.post("/api/jobs", json={"prompt": "p"})

        callback = await client.post(
            "/api/webhooks/veo-callback",
            json=make_callback("kie_task_1", urls=["https://cdn/v.mp4"]),
        )
        assert callback.status_code == 200
        assert callback.json() == {"received": True, "task_id": "kie_task_1", "status": "READY", "applied": True}
        await wait_until(lambda: not registry.is_active("kie_task_1"))

        response = await client.get("/api/jobs/kie_task_1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "READY"
        assert data["provider_video_url"] == "https://cdn/v.mp4"
        assert data["prompt"] == "p"

    @pytest.mark.asyncio
    async def test_get_job_of_other_user(self, client: AsyncClient, db_session):
        other = await create_user(db_session, 0, email="other@example.com")
        await JobStore.create(db_session, other.id, "kie_theirs", "secret")

        response = await client.get("/api/jobs/kie_theirs")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_jobs(self, client: AsyncClient, db_session, test_user: User):
        await JobStore.create(db_session, test_user.id, "kie_a", "first")
        await JobStore.create(db_session, test_user.id, "kie_b", "second")

        response = await client.get("/api/jobs")

        assert response.status_code == 200
        assert {job["task_id"] for job in response.json()} == {"kie_a", "kie_b"}


class TestVeoCallbackEndpoint:

    @pytest.mark.asyncio
    async def test_missing_task_id(self, client: AsyncClient):
        response = await client.post("/api/webhooks/veo-callback", json={"code": 200, "data": {}})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: AsyncClient):
        response = await client.post(
            "/api/webhooks/veo-callback",
            content=b"not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_replay_acknowledged(self, client: AsyncClient, db_session, test_user: User):
        await JobStore.create(db_session, test_user.id, "kie_r", "p", status=JobStatus.PROCESSING)
        payload = make_callback("kie_r", urls=["https://cdn/r.mp4"])

        first = await client.post("/api/webhooks/veo-callback", json=payload)
        second = await client.post("/api/webhooks/veo-callback", json=payload)

        assert first.json()["applied"] is True
        assert second.status_code == 200
        assert second.json()["applied"] is False

    @pytest.mark.asyncio
    async def test_status_probe_hidden_outside_dev(self, client: AsyncClient):
        response = await client.get("/api/webhooks/veo/status/kie_task_1")
        assert response.status_code == 404


class TestVideoEndpoints:

    @pytest.mark.asyncio
    async def test_download_not_ready(self, client: AsyncClient, db_session, test_user: User):
        await JobStore.create(db_session, test_user.id, "kie_v", "p", status=JobStatus.PROCESSING)
        video = await JobStore.get_video(db_session, "kie_v")

        response = await client.get(f"/api/videos/{video.id}/download")

        assert response.status_code == 400
        assert response.json()["detail"] == "Video not ready yet"

    @pytest.mark.asyncio
    async def test_download_redirects(self, client: AsyncClient, db_session, test_user: User):
        await JobStore.create(
            db_session,
            test_user.id,
            "kie_v",
            "p",
            status=JobStatus.READY,
            video_fields={"provider_video_url": "https://cdn/v.mp4"},
        )
        video = await JobStore.get_video(db_session, "kie_v")

        response = await client.get(f"/api/videos/{video.id}/download")

        assert response.status_code == 302
        assert response.headers["location"] == "https://cdn/v.mp4"

    @pytest.mark.asyncio
    async def test_list_and_get(self, client: AsyncClient, db_session, test_user: User):
        await JobStore.create(db_session, test_user.id, "kie_v", "a whale")
        video = await JobStore.get_video(db_session, "kie_v")

        listed = await client.get("/api/videos")
        single = await client.get(f"/api/videos/{video.id}")

        assert [v["prompt"] for v in listed.json()] == ["a whale"]
        assert single.json()["task_id"] == "kie_v"

    @pytest.mark.asyncio
    async def test_get_unknown(self, client: AsyncClient):
        response = await client.get("/api/videos/does-not-exist")
        assert response.status_code == 404


class TestMeEndpoints:
    """Tests for user profile endpoints."""

    @pytest.mark.asyncio
    async def test_get_credits(self, client: AsyncClient):
        response = await client.get("/api/me/credits")

        assert response.status_code == 200
        data = response.json()
        assert data["credits_remaining"] == 10
        assert data["subscription_status"] == "inactive"
        assert [entry["reason"] for entry in data["history"]] == ["promo"]

    @pytest.mark.asyncio
    async def test_get_credits_no_credits(self, client_no_credits: AsyncClient):
        response = await client_no_credits.get("/api/me/credits")

        assert response.status_code == 200
        assert response.json()["credits_remaining"] == 0
        assert response.json()["history"] == []

    @pytest.mark.asyncio
    async def test_cancel_subscription_keeps_credits(self, client: AsyncClient, session_factory, test_user: User):
        response = await client.post("/api/me/subscription/cancel")

        assert response.status_code == 200
        assert response.json()["credits_remaining"] == 10
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
            assert user.subscription_status == "canceled"
            assert user.active_plan is None


class TestPaymentEndpoints:

    @pytest.mark.asyncio
    async def test_list_plans(self, client: AsyncClient):
        response = await client.get("/api/payments/plans")

        assert response.status_code == 200
        plans = {plan["key"]: plan for plan in response.json()["plans"]}
        assert plans["basic"]["price_id"] == "price_basic_test"
        assert plans["pro"]["credits_per_period"] == 100

    @pytest.mark.asyncio
    async def test_checkout_unknown_plan(self, client: AsyncClient):
        response = await client.post(
            "/api/payments/checkout",
            json={"plan": "gold", "success_url": "https://a/ok", "cancel_url": "https://a/no"},
        )
        assert response.status_code == 400


class TestChatEndpoint:

    @pytest.mark.asyncio
    async def test_refine_prompt_falls_back_on_error(self, client: AsyncClient):
        # The injected MagicMock client returns a non-JSON message, so the user's text comes back
        response = await client.post("/api/chat/refine-prompt", json={"prompt": "un gato en la playa"})

        assert response.status_code == 200
        data = response.json()
        assert data["prompt_en"] == "un gato en la playa"
        assert data["refined"] is False
        assert data["aspect_ratio"] == "9:16"

    @pytest.mark.asyncio
    async def test_refine_prompt(self, client: AsyncClient):
        from app.ai.prompt_refiner import PromptRefiner
        from app.api.dependencies import get_prompt_refiner
        from app.main import app

        openai_client = MagicMock()
        openai_client.chat.completions.create.return_value.choices = [
            MagicMock(message=MagicMock(content='{"prompt": "A cat on a beach, golden hour", "seeds": 23456}'))
        ]
        app.dependency_overrides[get_prompt_refiner] = lambda: PromptRefiner(client=openai_client)

        response = await client.post("/api/chat/refine-prompt", json={"prompt": "un gato en la playa"})

        data = response.json()
        assert data["prompt_en"] == "A cat on a beach, golden hour"
        assert data["seeds"] == 23456
        assert data["refined"] is True
