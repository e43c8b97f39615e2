"""
LLM helpers. Only prompt refinement is used; generation itself goes to Kie.ai.
"""
from app.ai.prompt_refiner import PromptRefiner, RefinedPrompt

__all__ = ["PromptRefiner", "RefinedPrompt"]
