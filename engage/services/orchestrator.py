"""Response Orchestrator: the inbound pipeline for one normalized event.

``ingest`` runs contact resolution, conversation open-or-reuse and message
persistence under a per-address lock, then commits. Storage faults there raise
``IngestionError`` so the transport retries. ``respond`` runs automation
matching and the AI reply; its failures are logged and never raised.
"""

from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from engage.database import SessionLocal
from engage.logging_config import ContextLogger, get_logger
from engage.models import Contact, Conversation
from engage.services import automation_matcher
from engage.services.ai_handoff import AIHandoffController
from engage.services.automation_service import enqueue_dispatch, load_enabled_rules
from engage.services.contact_service import normalize_address, resolve_contact
from engage.services.conversation_service import open_or_reuse
from engage.services.delivery.base import DeliveryProvider
from engage.services.events import InboundEvent
from engage.services.llm.base import InferenceProvider
from engage.services.locks import KeyedLock
from engage.services.message_service import persist_inbound
from engage.services.result import Result
from engage.services.tenant_service import TenantContext

logger = get_logger("orchestrator")

# Shared by every orchestrator in the process.
_address_locks = KeyedLock()


class IngestionError(Exception):
    """Storage failed before the inbound message was durably persisted."""


@dataclass
class InboundOutcome:
    event: InboundEvent
    contact_id: UUID
    conversation_id: UUID
    message_id: UUID
    is_new_contact: bool = False
    is_new_conversation: bool = False
    duplicate: bool = False
    automation_triggered: bool = False
    ai_invoked: bool = False
    ai_result: Optional[Result] = None


class ResponseOrchestrator:
    def __init__(
        self,
        inference: InferenceProvider,
        delivery: DeliveryProvider,
        session_factory: Callable[[], Session] = SessionLocal,
        locks: Optional[KeyedLock] = None,
        handoff: Optional[AIHandoffController] = None,
    ):
        self.inference = inference
        self.delivery = delivery
        self.session_factory = session_factory
        self.locks = locks if locks is not None else _address_locks
        self.handoff = handoff or AIHandoffController(inference, delivery)

    def ingest(self, db: Session, ctx: TenantContext, event: InboundEvent) -> InboundOutcome:
        """Persist the event. Raises InvalidEventError or IngestionError."""
        address = normalize_address(event.external_address)
        log = ContextLogger(
            logger, {"tenant_id": str(ctx.tenant_id), "external_message_id": event.external_message_id}
        )

        try:
            with self.locks.hold((ctx.tenant_id, address)):
                contact, is_new_contact = resolve_contact(db, ctx, address, event.sender_display_name)
                conversation, is_new_conversation = open_or_reuse(db, ctx, contact.id)
                message, created = persist_inbound(db, ctx, conversation, event)

                if not created:
                    outcome = InboundOutcome(
                        event=event,
                        contact_id=contact.id,
                        conversation_id=message.conversation_id,
                        message_id=message.id,
                        duplicate=True,
                    )
                    # Undo the last-message and unread bumps made for this re-delivery.
                    db.rollback()
                    log.info("Duplicate inbound event ignored", context={"message_id": str(outcome.message_id)})
                    return outcome

                outcome = InboundOutcome(
                    event=event,
                    contact_id=contact.id,
                    conversation_id=conversation.id,
                    message_id=message.id,
                    is_new_contact=is_new_contact,
                    is_new_conversation=is_new_conversation,
                )
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error("Inbound event could not be stored", context={"error": str(e)})
            raise IngestionError(str(e)) from e

        log = log.bind(conversation_id=str(outcome.conversation_id))
        log.info(
            "Inbound message persisted",
            context={
                "message_id": str(outcome.message_id),
                "new_contact": outcome.is_new_contact,
                "new_conversation": outcome.is_new_conversation,
            },
        )
        return outcome

    def respond(self, db: Session, ctx: TenantContext, outcome: InboundOutcome) -> InboundOutcome:
        """Automation or AI reply for a persisted event; at most one of the two runs."""
        if outcome.duplicate:
            return outcome

        log = ContextLogger(
            logger, {"tenant_id": str(ctx.tenant_id), "conversation_id": str(outcome.conversation_id)}
        )
        try:
            contact = db.query(Contact).filter(Contact.id == outcome.contact_id).one()
            conversation = db.query(Conversation).filter(Conversation.id == outcome.conversation_id).one()
            rule = automation_matcher.match(
                outcome.event,
                contact,
                outcome.is_new_contact,
                outcome.is_new_conversation,
                load_enabled_rules(db, ctx, contact),
            )

            if rule is not None:
                outcome.automation_triggered = enqueue_dispatch(
                    db, ctx, rule, contact, conversation, outcome.event.external_message_id
                )
                db.commit()
                log.info(
                    "Automation rule matched, AI reply skipped",
                    context={"rule_id": str(rule.id), "queued": outcome.automation_triggered},
                )
                return outcome

            if not outcome.event.is_text or not outcome.event.text.strip():
                return outcome
            if not conversation.is_bot_active or not ctx.ai_enabled:
                log.debug("Bot inactive, no AI reply", context={"ai_enabled": ctx.ai_enabled})
                return outcome

            outcome.ai_invoked = True
            outcome.ai_result = self.handoff.respond(
                db,
                ctx,
                conversation.id,
                outcome.event.sender_display_name or contact.name,
                outcome.event.text,
                inbound_message_id=outcome.message_id,
            )
        except Exception as e:
            db.rollback()
            log.exception("Response step failed", context={"error": str(e)})
        return outcome

    def handle_inbound(self, db: Session, ctx: TenantContext, event: InboundEvent) -> Result[InboundOutcome]:
        """Whole pipeline in the caller's thread.

        Succeeds once the inbound message is stored, whatever happens to the reply.
        """
        outcome = self.ingest(db, ctx, event)
        return Result.success(self.respond(db, ctx, outcome))

    def respond_detached(self, ctx: TenantContext, outcome: InboundOutcome) -> None:
        """``respond`` on a fresh session, for use as a background task."""
        db = self.session_factory()
        try:
            self.respond(db, ctx, outcome)
        finally:
            db.close()
