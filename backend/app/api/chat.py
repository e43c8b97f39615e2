"""
Prompt refinement endpoint.
"""
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from typing import Optional

from app.ai.prompt_refiner import PromptRefiner
from app.api.dependencies import get_prompt_refiner
from app.auth.dependencies import get_current_user
from app.models.user import User

router = APIRouter()


class RefinePromptRequest(BaseModel):
    """Request schema for prompt refinement."""
    prompt: str = Field(..., min_length=1, max_length=2000)


class RefinePromptResponse(BaseModel):
    """Response schema for prompt refinement."""
    prompt_en: str
    model: str
    aspect_ratio: str
    seeds: Optional[int] = None
    refined: bool


@router.post("/refine-prompt", response_model=RefinePromptResponse)
async def refine_prompt(
    request: RefinePromptRequest,
    current_user: User = Depends(get_current_user),
    refiner: PromptRefiner = Depends(get_prompt_refiner),
):
    """Turn a video idea into an English prompt ready for submission."""
    result = await run_in_threadpool(refiner.refine, request.prompt)
    return RefinePromptResponse(**result.to_dict())
