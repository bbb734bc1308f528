import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from engage.database import Base
from engage.models.types import JSONType, utcnow


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("tenant_id", "address", name="uq_contacts_tenant_address"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    address = Column(Text, nullable=False)  # digits-only phone number
    name = Column(Text)
    tags = Column(JSONType, nullable=False, default=list)
    is_validated = Column(Boolean, nullable=False, default=False)
    contact_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_message_at = Column(DateTime(timezone=True))

    conversations = relationship("Conversation", back_populates="contact")
