from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from engage.services.tenant_service import TenantContext


@dataclass
class DeliveryReceipt:
    """Provider acceptance, not final delivery."""

    accepted: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryProvider(ABC):
    @abstractmethod
    def send(
        self, ctx: TenantContext, destination_address: str, text: str, reference: Optional[str] = None
    ) -> DeliveryReceipt:
        """Hand ``text`` to the provider for ``destination_address``.

        ``reference`` is echoed back by the provider on status callbacks.
        """
        pass
