import re
from typing import Optional

import httpx

from engage.logging_config import get_logger
from engage.services.delivery.base import DeliveryProvider, DeliveryReceipt
from engage.services.tenant_service import TenantContext

logger = get_logger("delivery.whatsapp")

_NON_DIGITS = re.compile(r"\D")


def format_destination(address: str, default_country_code: Optional[str] = None) -> str:
    digits = _NON_DIGITS.sub("", address or "")
    if default_country_code and digits and not digits.startswith(default_country_code):
        return f"{default_country_code}{digits}"
    return digits


class WhatsAppCloudProvider(DeliveryProvider):
    """Text sends through the WhatsApp Cloud API (graph /{phone_number_id}/messages)."""

    def __init__(
        self,
        graph_url: str = "https://graph.facebook.com/v18.0",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.graph_url = graph_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def send(
        self, ctx: TenantContext, destination_address: str, text: str, reference: Optional[str] = None
    ) -> DeliveryReceipt:
        if not ctx.access_token:
            logger.error(
                "WhatsApp access token missing for tenant",
                extra={"context": {"tenant_id": str(ctx.tenant_id)}},
            )
            return DeliveryReceipt(accepted=False, error="missing_access_token")

        to = format_destination(destination_address, ctx.default_country_code)
        if not to or not text:
            logger.warning(f"WhatsApp send skipped: to={to!r}, empty_text={not text}")
            return DeliveryReceipt(accepted=False, error="invalid_request")

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        if reference:
            payload["biz_opaque_callback_data"] = reference
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    f"{self.graph_url}/{ctx.phone_number_id}/messages",
                    headers={"Authorization": f"Bearer {ctx.access_token}"},
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}", extra={"context": {"to": to}})
            return DeliveryReceipt(accepted=False, error=str(e) or type(e).__name__)

        logger.info(f"WhatsApp response: status={response.status_code}, to={to}, body={response.text[:200]}")
        if response.status_code not in (200, 201):
            return DeliveryReceipt(accepted=False, error=_error_message(response))

        try:
            data = response.json()
        except ValueError:
            data = {}
        messages = data.get("messages") or []
        provider_message_id = messages[0].get("id") if messages else None
        return DeliveryReceipt(accepted=True, provider_message_id=provider_message_id)


def _error_message(response: httpx.Response) -> str:
    try:
        error = (response.json() or {}).get("error") or {}
    except ValueError:
        return f"HTTP {response.status_code}"
    return error.get("message") or f"HTTP {response.status_code}"
