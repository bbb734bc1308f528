import re
import uuid
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from engage.database import insert_ignore
from engage.logging_config import get_logger
from engage.models import Contact
from engage.models.types import utcnow
from engage.services.events import DEFAULT_DISPLAY_NAME, InvalidEventError
from engage.services.tenant_service import TenantContext

logger = get_logger("contact_service")

CHANNEL_ACQUIRED_TAG = "whatsapp_acquired"

_NON_DIGITS = re.compile(r"\D")


def normalize_address(raw: Optional[str]) -> str:
    """Digits-only canonical form of an external address (phone number)."""
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        raise InvalidEventError(f"External address has no digits: {raw!r}")
    return digits


def resolve_contact(
    db: Session,
    ctx: TenantContext,
    external_address: str,
    display_name_hint: Optional[str] = None,
) -> Tuple[Contact, bool]:
    """Find the contact for an address or create it. Returns (contact, is_new).

    Creation is an insert-if-absent on the (tenant_id, address) unique key, so two
    concurrent first messages from the same sender end up on the same row.
    """
    address = normalize_address(external_address)
    now = utcnow()
    name = (display_name_hint or "").strip() or DEFAULT_DISPLAY_NAME

    created = insert_ignore(
        db,
        Contact,
        {
            "id": uuid.uuid4(),
            "tenant_id": ctx.tenant_id,
            "address": address,
            "name": name,
            "tags": [CHANNEL_ACQUIRED_TAG],
            # Inbound delivery proves the number is reachable.
            "is_validated": True,
            "contact_metadata": {"source": "whatsapp_webhook", "profile_name": display_name_hint},
            "created_at": now,
            "last_message_at": now,
        },
    )

    contact = db.query(Contact).filter(Contact.tenant_id == ctx.tenant_id, Contact.address == address).one()

    if created:
        logger.info(
            "Contact created",
            extra={"context": {"tenant_id": str(ctx.tenant_id), "contact_id": str(contact.id)}},
        )
    else:
        contact.last_message_at = now
        contact.is_validated = True
        if not contact.name:
            contact.name = name
        db.flush()

    return contact, created
