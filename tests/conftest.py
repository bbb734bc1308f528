import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTOMATION_WORKER_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from engage.database import Base
from engage.models import AutomationRule, Contact, Conversation, Message, Tenant
from engage.services.delivery.base import DeliveryProvider, DeliveryReceipt
from engage.services.events import InboundEvent
from engage.services.llm.base import InferenceProvider, InferenceResult
from engage.services.tenant_service import TenantContext


class FakeInference(InferenceProvider):
    """Records calls; returns ``result`` or raises ``error``."""

    def __init__(self, result=None, error=None):
        self.result = result or InferenceResult(text="Hello! How can I help?")
        self.error = error
        self.calls = []

    def infer(self, history, context):
        self.calls.append({"history": history, "context": context})
        if self.error is not None:
            raise self.error
        return self.result


class FakeDelivery(DeliveryProvider):
    def __init__(self, accepted=True, error=None):
        self.accepted = accepted
        self.error = error
        self.sent = []
        self.references = []

    def send(self, ctx, destination_address, text, reference=None):
        self.sent.append({"tenant_id": ctx.tenant_id, "to": destination_address, "text": text})
        self.references.append(reference)
        if self.error is not None:
            raise self.error
        if not self.accepted:
            return DeliveryReceipt(accepted=False, error="rejected by provider")
        return DeliveryReceipt(accepted=True, provider_message_id=f"wamid.out.{len(self.sent)}")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    tenant = Tenant(
        name="Acme Store",
        phone_number_id="1000200030004000",
        access_token="tenant-access-token",
        verify_token="tenant-verify-token",
        config={"ai": {"enabled": True, "name": "Ana", "history_limit": 10}},
    )
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def ctx(tenant):
    return TenantContext.from_tenant(tenant)


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(text="oi", address="5511999990000", message_id=None, content_kind="text", name="Maria Silva"):
        counter["n"] += 1
        return InboundEvent(
            external_address=address,
            sender_display_name=name,
            external_message_id=message_id or f"wamid.in.{counter['n']}",
            content_kind=content_kind,
            text=text,
            timestamp=datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_rule(db, tenant):
    counter = {"n": 0}
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _make(trigger_config, action_text="Automated reply", is_enabled=True, name=None, template=None):
        counter["n"] += 1
        rule = AutomationRule(
            tenant_id=tenant.id,
            name=name or f"rule-{counter['n']}",
            trigger_config=trigger_config,
            is_enabled=is_enabled,
            action_text=action_text,
            template=template,
            created_at=base + timedelta(minutes=counter["n"]),
        )
        db.add(rule)
        db.commit()
        return rule

    return _make


@pytest.fixture
def make_contact(db, tenant):
    def _make(address="5511999990000", name="Maria Silva"):
        contact = Contact(tenant_id=tenant.id, address=address, name=name, tags=[], is_validated=True)
        db.add(contact)
        db.commit()
        return contact

    return _make


@pytest.fixture
def make_conversation(db, tenant):
    def _make(contact, status="active", is_bot_active=True, created_at=None, unread_count=0):
        conversation = Conversation(
            tenant_id=tenant.id,
            contact_id=contact.id,
            status=status,
            is_bot_active=is_bot_active,
            unread_count=unread_count,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(conversation)
        db.commit()
        return conversation

    return _make


@pytest.fixture
def make_message(db, tenant):
    counter = {"n": 0}
    base = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def _make(conversation, content, sender_kind="contact", external_id=None, status="pending"):
        counter["n"] += 1
        message = Message(
            tenant_id=tenant.id,
            conversation_id=conversation.id,
            content=content,
            sender_kind=sender_kind,
            content_kind="text",
            external_id=external_id,
            status=status,
            created_at=base + timedelta(seconds=counter["n"]),
        )
        db.add(message)
        db.commit()
        return message

    return _make
