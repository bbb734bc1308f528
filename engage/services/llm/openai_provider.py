from typing import List, Optional

import httpx

from engage.logging_config import get_logger
from engage.services.llm.base import InferenceError, InferenceProvider, InferenceResult

logger = get_logger("llm.openai")

TRANSFER_MARKER = "[TRANSFER_TO_HUMAN]"
TRANSFER_TOOL_NAME = "transfer_to_human"
TRANSFER_COURTESY_MESSAGE = (
    "Understood. I'm transferring you to one of our agents right now. Please wait a moment."
)

TRANSFER_TOOL = {
    "type": "function",
    "function": {
        "name": TRANSFER_TOOL_NAME,
        "description": "Transfer the conversation to a human agent and turn the assistant off.",
        "parameters": {
            "type": "object",
            "properties": {"reason": {"type": "string", "description": "Short reason for the transfer"}},
            "required": ["reason"],
        },
    },
}


class OpenAIProvider(InferenceProvider):
    """OpenAI chat-completions provider with a human-transfer tool."""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        max_tokens: int = 1000,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.transport = transport

    def infer(self, history: List[dict], context: dict) -> InferenceResult:
        if not self.api_key:
            raise InferenceError("OpenAI API key is not configured")

        model = context.get("model") or self.default_model
        messages = list(history)
        system_prompt = context.get("system_prompt")
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        payload = {
            "model": model,
            "messages": messages,
            "tools": [TRANSFER_TOOL],
            "tool_choice": "auto",
            "max_tokens": self.max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"OpenAI request failed: {type(e).__name__}: {e}")
            raise InferenceError(f"OpenAI request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} {response.text[:300]}")
            raise InferenceError(f"OpenAI API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise InferenceError("OpenAI response is not JSON") from e
        if not isinstance(data, dict):
            raise InferenceError("OpenAI response is not a JSON object")
        choices = data.get("choices") or []
        if not choices:
            raise InferenceError("OpenAI response has no choices")

        message = choices[0].get("message") or {}
        content = message.get("content") or ""

        needs_transfer = any(
            (call.get("function") or {}).get("name") == TRANSFER_TOOL_NAME for call in message.get("tool_calls") or []
        )
        if TRANSFER_MARKER in content:
            needs_transfer = True
            content = content.replace(TRANSFER_MARKER, "")
        content = content.strip()
        if not content and needs_transfer:
            content = TRANSFER_COURTESY_MESSAGE

        return InferenceResult(
            text=content,
            needs_human_transfer=needs_transfer,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
