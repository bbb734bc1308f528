import uuid
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from engage.database import insert_ignore
from engage.models import Conversation, Message
from engage.models.types import utcnow
from engage.services.delivery_status import DeliveryStatus
from engage.services.events import InboundEvent
from engage.services.tenant_service import TenantContext


class SenderKind(str, Enum):
    CONTACT = "contact"
    AGENT = "agent"
    BOT = "bot"


ROLE_BY_SENDER = {
    SenderKind.CONTACT.value: "user",
    SenderKind.AGENT.value: "assistant",
    SenderKind.BOT.value: "assistant",
}


def persist_inbound(
    db: Session,
    ctx: TenantContext,
    conversation: Conversation,
    event: InboundEvent,
) -> Tuple[Message, bool]:
    """Insert the contact's message unless its external id is already stored.

    Returns (message, created). ``created`` is False for a re-delivered event, in
    which case the previously stored message is returned.
    """
    now = utcnow()
    created = insert_ignore(
        db,
        Message,
        {
            "id": uuid.uuid4(),
            "tenant_id": ctx.tenant_id,
            "conversation_id": conversation.id,
            "content": event.text,
            "sender_kind": SenderKind.CONTACT.value,
            "content_kind": event.content_kind,
            "external_id": event.external_message_id,
            # Inbound messages have already reached us.
            "status": DeliveryStatus.DELIVERED.value,
            "message_metadata": {
                "provider_timestamp": event.timestamp.isoformat() if event.timestamp else None,
                "profile_name": event.sender_display_name,
            },
            "created_at": now,
            "status_updated_at": now,
        },
    )
    message = (
        db.query(Message)
        .filter(Message.tenant_id == ctx.tenant_id, Message.external_id == event.external_message_id)
        .one()
    )
    return message, created


def save_outbound_message(
    db: Session,
    ctx: TenantContext,
    conversation_id: UUID,
    content: str,
    *,
    sender_kind: SenderKind = SenderKind.BOT,
    external_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> Message:
    """Save a bot/agent message in pending status."""
    now = utcnow()
    message = Message(
        tenant_id=ctx.tenant_id,
        conversation_id=conversation_id,
        content=content,
        sender_kind=sender_kind.value,
        content_kind="text",
        external_id=external_id,
        status=DeliveryStatus.PENDING.value,
        message_metadata=message_metadata or {},
        created_at=now,
        status_updated_at=now,
    )
    db.add(message)
    db.flush()
    return message


def get_conversation_history(db: Session, conversation_id: UUID, limit: int = 10) -> List[dict]:
    """Most recent ``limit`` messages, oldest first, as {role, content} dicts."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )

    history = []
    for msg in reversed(rows):
        role = ROLE_BY_SENDER.get(msg.sender_kind)
        if role is None or not msg.content:
            continue
        history.append({"role": role, "content": msg.content})
    return history


def has_newer_contact_message(db: Session, conversation_id: UUID, message_id: UUID) -> bool:
    """True if the latest message in the conversation is a different contact message."""
    latest = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .first()
    )
    return bool(latest and latest.id != message_id and latest.sender_kind == SenderKind.CONTACT.value)
