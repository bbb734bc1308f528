import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship

from engage.database import Base
from engage.models.types import utcnow

# Must stay in sync with OPEN_STATUSES in services/state_machine.py
_OPEN_STATUS_CLAUSE = text("status IN ('active', 'waiting_human')")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "uq_conversations_one_open_per_contact",
            "contact_id",
            unique=True,
            postgresql_where=_OPEN_STATUS_CLAUSE,
            sqlite_where=_OPEN_STATUS_CLAUSE,
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, waiting_human, resolved
    is_bot_active = Column(Boolean, nullable=False, default=True)
    unread_count = Column(Integer, nullable=False, default=0)
    assigned_to = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_message_at = Column(DateTime(timezone=True))
    resolved_at = Column(DateTime(timezone=True))

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
