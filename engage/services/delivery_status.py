"""Delivery Status Tracker: monotonic status updates from provider callbacks."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from engage.logging_config import get_logger
from engage.models import Message
from engage.models.types import utcnow
from engage.services.tenant_service import TenantContext

logger = get_logger("delivery_status")


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Total order for forward progress; FAILED sits outside it.
STATUS_RANK = {
    DeliveryStatus.PENDING.value: 0,
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
    DeliveryStatus.READ.value: 3,
}


def statuses_superseded_by(new_status: str) -> list[str]:
    """Stored statuses that ``new_status`` may overwrite."""
    if new_status == DeliveryStatus.FAILED.value:
        return list(STATUS_RANK)
    rank = STATUS_RANK[new_status]
    return [status for status, other_rank in STATUS_RANK.items() if other_rank < rank]


def _apply_by_reference(
    db: Session,
    ctx: TenantContext,
    reference: str,
    provider_message_id: str,
    new_status: str,
    timestamp: Optional[datetime],
) -> bool:
    # Callback that beat the receipt: the outbound row has no external id yet.
    try:
        message_id = uuid.UUID(reference)
    except ValueError:
        return False
    updated = (
        db.query(Message)
        .filter(
            Message.tenant_id == ctx.tenant_id,
            Message.id == message_id,
            Message.external_id.is_(None),
            Message.status.in_(statuses_superseded_by(new_status)),
        )
        .update(
            {
                Message.external_id: provider_message_id,
                Message.status: new_status,
                Message.status_updated_at: timestamp or utcnow(),
            },
            synchronize_session=False,
        )
    )
    if updated:
        logger.info(
            "Delivery status applied before send receipt",
            extra={"context": {"external_id": provider_message_id, "message_id": reference, "status": new_status}},
        )
    return bool(updated)


def apply_status(
    db: Session,
    ctx: TenantContext,
    provider_message_id: str,
    new_status: str,
    timestamp: Optional[datetime] = None,
    reference: Optional[str] = None,
) -> bool:
    """Apply a status callback. Returns True when the stored status changed.

    ``reference`` is our message id as echoed by the provider; it finds an
    outbound message whose provider id has not been recorded yet.

    The update is one conditional UPDATE whose WHERE clause only matches
    statuses the new one supersedes, so stale, duplicate or concurrent
    callbacks cannot move a message backwards.
    """
    if new_status not in STATUS_RANK and new_status != DeliveryStatus.FAILED.value:
        logger.warning("Unknown delivery status", extra={"context": {"status": new_status}})
        return False

    updated = (
        db.query(Message)
        .filter(
            Message.tenant_id == ctx.tenant_id,
            Message.external_id == provider_message_id,
            Message.status.in_(statuses_superseded_by(new_status)),
        )
        .update(
            {Message.status: new_status, Message.status_updated_at: timestamp or utcnow()},
            synchronize_session=False,
        )
    )
    if updated:
        logger.info(
            "Delivery status applied",
            extra={"context": {"external_id": provider_message_id, "status": new_status}},
        )
        return True
    if reference and _apply_by_reference(db, ctx, reference, provider_message_id, new_status, timestamp):
        return True

    exists = (
        db.query(Message.id)
        .filter(Message.tenant_id == ctx.tenant_id, Message.external_id == provider_message_id)
        .first()
    )
    if exists is None:
        logger.info(
            "Status for unknown message discarded",
            extra={"context": {"external_id": provider_message_id, "status": new_status}},
        )
    else:
        logger.debug(
            "Stale delivery status ignored",
            extra={"context": {"external_id": provider_message_id, "status": new_status}},
        )
    return False
