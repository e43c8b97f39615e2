"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from app.api import health, jobs, videos, me, payments, chat, webhooks

api_router = APIRouter()

# Include route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(videos.router, prefix="/videos", tags=["videos"])
api_router.include_router(me.router, prefix="/me", tags=["me"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
