"""Normalized pipeline events and their extraction from WhatsApp webhook values."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from engage.logging_config import get_logger
from engage.schemas.webhook import WhatsAppMessage, WhatsAppValue

logger = get_logger("events")

DEFAULT_DISPLAY_NAME = "WhatsApp Contact"
KNOWN_STATUSES = {"sent", "delivered", "read", "failed"}


class InvalidEventError(ValueError):
    """Event can never be processed (retrying it will not help)."""


@dataclass(frozen=True)
class InboundEvent:
    external_address: str
    sender_display_name: Optional[str]
    external_message_id: str
    content_kind: str
    text: str
    timestamp: Optional[datetime] = None

    @property
    def is_text(self) -> bool:
        return self.content_kind == "text"


@dataclass(frozen=True)
class StatusEvent:
    external_message_id: str
    new_status: str
    timestamp: Optional[datetime] = None
    reference: Optional[str] = None


def build_idempotency_key(
    message_id: str | None,
    address: str | None,
    timestamp: str | None,
    text: str | None,
) -> str:
    """Provider message id, or a stable substitute when the provider omitted it."""
    if message_id and message_id.strip():
        return message_id.strip()
    if address and timestamp:
        return f"{address}:{timestamp}"
    if address and text:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        return f"{address}:{digest}"
    return str(uuid.uuid4())


def parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def extract_content(message: WhatsAppMessage) -> str:
    kind = (message.type or "").strip().lower()
    if kind == "text":
        return message.text.body if message.text else ""
    if kind == "image":
        caption = message.image.caption if message.image else None
        return caption or "[Image received]"
    if kind == "audio":
        return "[Audio received]"
    if kind == "document":
        filename = message.document.filename if message.document else None
        return f"[Document: {filename or 'file'}]"
    return f"[{kind or 'unknown'} received]"


def _display_name_for(value: WhatsAppValue, sender: str) -> str:
    for contact in value.contacts:
        if contact.wa_id == sender and contact.profile and contact.profile.name:
            return contact.profile.name
    if value.contacts and value.contacts[0].profile and value.contacts[0].profile.name:
        return value.contacts[0].profile.name
    return DEFAULT_DISPLAY_NAME


def inbound_events_from_value(value: WhatsAppValue) -> list[InboundEvent]:
    """One InboundEvent per message; ids repeated inside the same delivery are dropped."""
    events: list[InboundEvent] = []
    seen: set[str] = set()
    for message in value.messages:
        text = extract_content(message)
        key = build_idempotency_key(message.id, message.from_, message.timestamp, text)
        if key in seen:
            continue
        seen.add(key)
        events.append(
            InboundEvent(
                external_address=message.from_,
                sender_display_name=_display_name_for(value, message.from_),
                external_message_id=key,
                content_kind=(message.type or "").strip().lower() or "unknown",
                text=text,
                timestamp=parse_timestamp(message.timestamp),
            )
        )
    return events


def status_events_from_value(value: WhatsAppValue) -> list[StatusEvent]:
    events: list[StatusEvent] = []
    for status in value.statuses:
        new_status = (status.status or "").strip().lower()
        if new_status not in KNOWN_STATUSES:
            logger.info(
                "Ignoring unknown delivery status",
                extra={"context": {"message_id": status.id, "status": status.status}},
            )
            continue
        events.append(
            StatusEvent(
                external_message_id=status.id,
                new_status=new_status,
                timestamp=parse_timestamp(status.timestamp),
                reference=status.biz_opaque_callback_data,
            )
        )
    return events
