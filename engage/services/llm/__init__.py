from engage.services.llm.base import InferenceError, InferenceProvider, InferenceResult
from engage.services.llm.openai_provider import OpenAIProvider

__all__ = ["InferenceError", "InferenceProvider", "InferenceResult", "OpenAIProvider"]
