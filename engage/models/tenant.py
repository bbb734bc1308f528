import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from engage.database import Base
from engage.models.types import JSONType, utcnow


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    phone_number_id = Column(Text, nullable=False, unique=True)  # WhatsApp Cloud API sender id
    access_token = Column(Text)
    verify_token = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    config = Column(JSONType, nullable=False, default=dict)  # {"ai": {...}, "default_country_code": "55"}
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
