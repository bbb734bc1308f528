import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from engage.database import Base
from engage.models.types import JSONType, utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("tenant_id", "external_id", name="uq_messages_tenant_external_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    content = Column(Text, nullable=False)
    sender_kind = Column(Text, nullable=False)  # contact, agent, bot
    content_kind = Column(Text, nullable=False, default="text")  # text, image, audio, document, ...
    external_id = Column(Text)  # provider message id; idempotency + status correlation
    status = Column(Text, nullable=False, default="pending")  # pending, sent, delivered, read, failed
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status_updated_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
