import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid

from engage.database import Base
from engage.models.types import utcnow


class AutomationJob(Base):
    __tablename__ = "automation_jobs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "inbound_message_id", name="uq_automation_jobs_tenant_inbound"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    rule_id = Column(Uuid, ForeignKey("automation_rules.id"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"))
    inbound_message_id = Column(Text, nullable=False)
    trigger_kind = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, DONE, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
