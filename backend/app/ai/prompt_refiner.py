"""
OpenAI prompt refiner.
Turns a user's video idea into an English prompt tuned for the Veo model.
"""
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an AI video prompt expert. Transform the user's idea into an optimized English prompt for the Veo3 Fast video model.

Guidelines:
- Create cinematic, detailed prompts in English only
- Include camera movement, lighting, and visual details
- Optimize for video generation quality
- Keep prompts under 500 characters
- Use vivid, descriptive language
- Vertical 9:16 framing for mobile

Respond with JSON in this exact format:
{
  "prompt": "<optimized English prompt>",
  "aspectRatio": "9:16",
  "seeds": <optional number between 10000 and 99999>
}"""


@dataclass
class RefinedPrompt:
    prompt_en: str
    model: str
    aspect_ratio: str
    seeds: Optional[int] = None
    refined: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PromptRefiner:
    """
    Opaque text -> structured prompt collaborator.

    Falls back to the user's own text when OpenAI is not configured or the
    call fails, so video creation never depends on it.
    """

    def __init__(self, client: Optional[OpenAI] = None):
        self.chat_model = settings.openai_chat_model
        if client is not None:
            self.client = client
        elif settings.openai_api_key:
            self.client = OpenAI(api_key=settings.openai_api_key)
        else:
            self.client = None

    def is_configured(self) -> bool:
        return self.client is not None

    def _fallback(self, user_input: str) -> RefinedPrompt:
        return RefinedPrompt(
            prompt_en=user_input,
            model=settings.kie_model,
            aspect_ratio=settings.default_aspect_ratio,
            refined=False,
        )

    def refine(self, user_input: str) -> RefinedPrompt:
        """Blocking call; run it in a threadpool from async code."""
        if not self.is_configured():
            logger.warning("OpenAI API key not configured, returning prompt unchanged")
            return self._fallback(user_input)

        try:
            response = self.client.chat.completions.create(
                model=self.chat_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_input},
                ],
                response_format={"type": "json_object"},
                temperature=0.7,
            )
            result = json.loads(response.choices[0].message.content or "{}")
        except Exception as e:
            logger.error(f"OpenAI prompt refinement failed, using original prompt: {e}")
            return self._fallback(user_input)

        seeds = result.get("seeds")
        if not isinstance(seeds, int) or not settings.seed_min <= seeds <= settings.seed_max:
            seeds = None

        return RefinedPrompt(
            prompt_en=(result.get("prompt") or user_input).strip(),
            model=settings.kie_model,
            aspect_ratio=settings.default_aspect_ratio,
            seeds=seeds,
        )
