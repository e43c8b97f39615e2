"""
FastAPI dependencies for long-lived components stored on app.state.
Tests override these through app.dependency_overrides.
"""
from fastapi import Request

from app.ai.prompt_refiner import PromptRefiner
from app.services.provider_gateway import KieGateway
from app.services.reconciler import CompletionReconciler


def get_provider_gateway(request: Request) -> KieGateway:
    return request.app.state.provider_gateway


def get_reconciler(request: Request) -> CompletionReconciler:
    return request.app.state.reconciler


def get_prompt_refiner(request: Request) -> PromptRefiner:
    return request.app.state.prompt_refiner
