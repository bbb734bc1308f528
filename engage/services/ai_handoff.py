import time
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from engage.logging_config import get_logger
from engage.models import Contact, Conversation, Message
from engage.services.conversation_service import hand_over_to_human
from engage.services.delivery.base import DeliveryProvider
from engage.services.llm.base import InferenceProvider
from engage.services.message_service import (
    get_conversation_history,
    has_newer_contact_message,
    save_outbound_message,
)
from engage.services.result import Result
from engage.services.tenant_service import TenantContext

logger = get_logger("ai_handoff")

DEFAULT_SYSTEM_PROMPT = (
    "You are {{ai_name}}, the virtual assistant of {{tenant_name}}.\n"
    "Answer {{contact_name}} politely and concisely, in the language they write in.\n"
    "Never invent deadlines, prices or policies. When you cannot help, or when the "
    "contact asks for a person, call the transfer_to_human tool."
)


def render_system_prompt(ctx: TenantContext, contact: Optional[Contact], contact_display_name: str) -> str:
    """Tenant prompt template with placeholders filled, plus the contact's stored data."""
    prompt = ctx.system_prompt or DEFAULT_SYSTEM_PROMPT
    replacements = {
        "{{ai_name}}": ctx.ai_name,
        "{{tenant_name}}": ctx.tenant_name,
        "{{contact_name}}": contact_display_name,
    }
    for placeholder, value in replacements.items():
        prompt = prompt.replace(placeholder, value or "")

    if contact is not None:
        tags = ", ".join(contact.tags or []) or "none"
        prompt += (
            "\n\n--- CONTACT RECORD ---\n"
            f"- Name: {contact.name or 'unknown'}\n"
            f"- Phone: {contact.address}\n"
            f"- Tags: {tags}\n"
            "----------------------"
        )
    return prompt


class AIHandoffController:
    """Generates the assistant reply for an inbound text and applies human handoff.

    Failures of the inference or delivery capability are logged and returned as
    ``Result.failure``; they never raise to the caller.
    """

    def __init__(
        self,
        inference: InferenceProvider,
        delivery: DeliveryProvider,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inference = inference
        self.delivery = delivery
        self._sleep = sleep

    def respond(
        self,
        db: Session,
        ctx: TenantContext,
        conversation_id: UUID,
        contact_display_name: str,
        latest_text: str,
        inbound_message_id: Optional[UUID] = None,
    ) -> Result[Message]:
        log_context = {"tenant_id": str(ctx.tenant_id), "conversation_id": str(conversation_id)}

        if ctx.buffer_seconds > 0 and inbound_message_id is not None:
            self._sleep(ctx.buffer_seconds)
            db.expire_all()
            if has_newer_contact_message(db, conversation_id, inbound_message_id):
                logger.info("Newer contact message arrived, skipping reply", extra={"context": log_context})
                return Result.skipped("superseded")

        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation is None:
            return Result.failure("Conversation not found", "not_found")
        if not conversation.is_bot_active:
            return Result.skipped("bot_inactive")

        contact = conversation.contact
        history = get_conversation_history(db, conversation_id, limit=ctx.history_limit)
        inference_context = {
            "tenant_id": str(ctx.tenant_id),
            "contact_name": contact_display_name,
            "model": ctx.ai_model,
            "system_prompt": render_system_prompt(ctx, contact, contact_display_name),
            "latest_text": latest_text,
        }

        try:
            inference = self.inference.infer(history, inference_context)
        except Exception as e:
            logger.error(
                "Inference failed, no reply sent",
                extra={"context": {**log_context, "error": str(e) or type(e).__name__}},
            )
            return Result.failure(str(e) or type(e).__name__, "inference_error")

        text = (inference.text or "").strip()
        reply = None
        if text:
            reply = save_outbound_message(
                db,
                ctx,
                conversation_id,
                text,
                message_metadata={"model": inference.model, "needs_human_transfer": inference.needs_human_transfer},
            )
        # Applied from the inference result, whatever happens to the delivery below.
        if inference.needs_human_transfer:
            hand_over_to_human(db, conversation)
        db.commit()

        if reply is None:
            logger.warning("Inference returned an empty reply", extra={"context": log_context})
            return Result.skipped("empty_reply")

        try:
            receipt = self.delivery.send(ctx, contact.address, text, reference=str(reply.id))
        except Exception as e:
            logger.error(
                "Delivery of AI reply failed",
                extra={"context": {**log_context, "message_id": str(reply.id), "error": str(e)}},
            )
            return Result.failure(str(e) or type(e).__name__, "delivery_error")

        if not receipt.accepted:
            logger.warning(
                "Delivery of AI reply rejected",
                extra={"context": {**log_context, "message_id": str(reply.id), "error": receipt.error}},
            )
            return Result.failure(receipt.error or "rejected", "delivery_rejected")

        if receipt.provider_message_id:
            reply.external_id = receipt.provider_message_id
            db.commit()

        logger.info(
            "AI reply sent",
            extra={"context": {**log_context, "message_id": str(reply.id), "handoff": inference.needs_human_transfer}},
        )
        return Result.success(reply)
