import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from engage.database import Base
from engage.models.types import JSONType, utcnow
from engage.schemas.automation import TriggerConfig, parse_trigger


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    name = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    name = Column(Text, nullable=False)
    trigger_config = Column(JSONType, nullable=False)  # {"type": "keyword", "keywords": [...]}
    is_enabled = Column(Boolean, nullable=False, default=True)
    action_text = Column(Text)
    template_id = Column(Uuid, ForeignKey("message_templates.id"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    template = relationship("MessageTemplate")

    @property
    def trigger(self) -> TriggerConfig:
        return parse_trigger(self.trigger_config)
