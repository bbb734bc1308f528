import uuid
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from engage.database import insert_ignore
from engage.logging_config import get_logger
from engage.models import Conversation, Message
from engage.models.types import utcnow
from engage.services.state_machine import (
    OPEN_STATUSES,
    ConversationStatus,
    InvalidTransitionError,
    reopen,
    request_human,
    resolve,
    return_to_bot,
)
from engage.services.tenant_service import TenantContext

logger = get_logger("conversation_service")

OPEN_LOOKUP_ATTEMPTS = 3


class ConversationActionError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def _open_conversations(db: Session, contact_id: UUID) -> List[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.contact_id == contact_id, Conversation.status.in_(OPEN_STATUSES))
        .order_by(Conversation.created_at.asc(), Conversation.id.asc())
        .all()
    )


def open_or_reuse(db: Session, ctx: TenantContext, contact_id: UUID) -> Tuple[Conversation, bool]:
    """Return the contact's single open conversation, creating it if needed.

    Returns (conversation, is_new). The partial unique index on open
    conversations makes the insert a no-op when another event already opened
    one; the loser of that race reuses the winner's row.
    """
    for _ in range(OPEN_LOOKUP_ATTEMPTS):
        now = utcnow()
        created = insert_ignore(
            db,
            Conversation,
            {
                "id": uuid.uuid4(),
                "tenant_id": ctx.tenant_id,
                "contact_id": contact_id,
                "status": ConversationStatus.ACTIVE.value,
                "is_bot_active": True,
                "unread_count": 1,
                "created_at": now,
                "updated_at": now,
                "last_message_at": now,
            },
        )

        open_conversations = _open_conversations(db, contact_id)
        if not open_conversations:
            # Resolved between our insert attempt and the lookup; try again.
            continue

        conversation = open_conversations[0]
        if len(open_conversations) > 1:
            conversation = repair_open_conversations(db, open_conversations)

        if created:
            logger.info(
                "Conversation opened",
                extra={"context": {"conversation_id": str(conversation.id), "contact_id": str(contact_id)}},
            )
        else:
            conversation.last_message_at = now
            conversation.updated_at = now
            conversation.unread_count = Conversation.unread_count + 1
            db.flush()
            db.refresh(conversation)
        return conversation, created

    raise RuntimeError(f"Could not open a conversation for contact {contact_id}")


def repair_open_conversations(db: Session, conversations: List[Conversation]) -> Conversation:
    """Merge duplicate open conversations onto the earliest-created one.

    ``conversations`` must be ordered by creation time. Messages of the others are
    moved to the survivor and the others are marked resolved.
    """
    survivor, duplicates = conversations[0], conversations[1:]
    now = utcnow()
    logger.error(
        "Multiple open conversations for contact, merging",
        extra={
            "context": {
                "contact_id": str(survivor.contact_id),
                "survivor_id": str(survivor.id),
                "duplicate_ids": [str(c.id) for c in duplicates],
            }
        },
    )
    for duplicate in duplicates:
        db.query(Message).filter(Message.conversation_id == duplicate.id).update(
            {Message.conversation_id: survivor.id}, synchronize_session=False
        )
        survivor.unread_count = (survivor.unread_count or 0) + (duplicate.unread_count or 0)
        duplicate.status = ConversationStatus.RESOLVED.value
        duplicate.is_bot_active = False
        duplicate.unread_count = 0
        duplicate.resolved_at = now
        duplicate.updated_at = now
    db.flush()
    return survivor


def hand_over_to_human(db: Session, conversation: Conversation) -> bool:
    """Turn the bot off and mark the conversation as waiting for an agent.

    Returns False when the conversation is no longer open (resolved meanwhile).
    """
    current = ConversationStatus(conversation.status)
    if current == ConversationStatus.RESOLVED:
        logger.warning(
            "Handoff requested for resolved conversation",
            extra={"context": {"conversation_id": str(conversation.id)}},
        )
        return False

    if current != ConversationStatus.WAITING_HUMAN:
        conversation.status = request_human(current).value
    conversation.is_bot_active = False
    conversation.updated_at = utcnow()
    db.flush()
    logger.info("Conversation handed over to human", extra={"context": {"conversation_id": str(conversation.id)}})
    return True


def apply_action(
    db: Session,
    conversation: Conversation,
    action: str,
    agent_id: Optional[str] = None,
) -> Tuple[str, str]:
    """Apply an agent action (take/resolve/reopen/return_to_bot). Returns (old, new) status."""
    old_status = conversation.status
    current = ConversationStatus(old_status)
    now = utcnow()

    try:
        if action == "take":
            if current == ConversationStatus.RESOLVED:
                raise ConversationActionError("Cannot take a resolved conversation")
            if current == ConversationStatus.ACTIVE:
                conversation.status = request_human(current).value
            conversation.is_bot_active = False
            conversation.assigned_to = agent_id
            conversation.unread_count = 0
        elif action == "resolve":
            conversation.status = resolve(current).value
            conversation.resolved_at = now
            conversation.assigned_to = None
        elif action == "reopen":
            new_status = reopen(current)
            if _open_conversations(db, conversation.contact_id):
                raise ConversationActionError("Contact already has an open conversation")
            conversation.status = new_status.value
            conversation.is_bot_active = True
            conversation.assigned_to = None
            conversation.resolved_at = None
        elif action == "return_to_bot":
            conversation.status = return_to_bot(current).value
            conversation.is_bot_active = True
            conversation.assigned_to = None
        else:
            raise ConversationActionError(f"Unknown action: {action}")
    except InvalidTransitionError as e:
        raise ConversationActionError(str(e)) from e

    conversation.updated_at = now
    db.flush()
    return old_status, conversation.status
