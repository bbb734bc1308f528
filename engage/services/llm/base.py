from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class InferenceError(Exception):
    """Inference service returned an error or an unusable response."""


@dataclass
class InferenceResult:
    text: str
    needs_human_transfer: bool = False
    model: Optional[str] = None
    usage: Optional[dict] = None


class InferenceProvider(ABC):
    """Request/response capability that produces the assistant's next reply."""

    @abstractmethod
    def infer(self, history: List[dict], context: dict) -> InferenceResult:
        """Generate a reply for ``history`` ({role, content} dicts, oldest first).

        ``context`` carries tenant and contact metadata (tenant_id, contact_name,
        model, system_prompt). Raises on failure or timeout.
        """
        pass
