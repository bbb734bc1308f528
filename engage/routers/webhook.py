import hashlib
import hmac
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from engage.config import settings
from engage.database import SessionLocal, get_db
from engage.logging_config import get_logger
from engage.schemas.webhook import WebhookResponse, WhatsAppWebhookPayload
from engage.services.delivery import WhatsAppCloudProvider
from engage.services.delivery_status import apply_status
from engage.services.events import InvalidEventError, inbound_events_from_value, status_events_from_value
from engage.services.llm import OpenAIProvider
from engage.services.orchestrator import IngestionError, ResponseOrchestrator
from engage.services.tenant_service import is_valid_verify_token, resolve_tenant_context

logger = get_logger("webhook")

router = APIRouter()


def get_orchestrator() -> ResponseOrchestrator:
    return ResponseOrchestrator(
        inference=OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.default_ai_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.inference_timeout_seconds,
        ),
        delivery=WhatsAppCloudProvider(
            graph_url=settings.whatsapp_graph_url,
            timeout_seconds=settings.delivery_timeout_seconds,
        ),
        session_factory=SessionLocal,
    )


def verify_signature(body: bytes, received: Optional[str], secret: str) -> bool:
    """Check Meta's ``X-Hub-Signature-256: sha256=<hex>`` header."""
    if not received or not received.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(received, expected)


@router.get("/webhook/whatsapp")
def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """Subscription handshake: echo the challenge when the token is known."""
    if mode == "subscribe" and challenge is not None and is_valid_verify_token(db, token):
        logger.info("Webhook subscription verified")
        return PlainTextResponse(challenge)
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


def _storage_unavailable(background_tasks: BackgroundTasks) -> JSONResponse:
    # Replies already queued for stored messages still run; redelivery sees those as duplicates.
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Storage unavailable"},
        background=background_tasks,
    )


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator),
):
    """Ingest WhatsApp Cloud API events.

    Inbound messages are stored before the response is returned; replies run
    afterwards as background tasks. A 500 asks the provider to deliver the event
    again. Messages stored before the failure are still answered.
    """
    if settings.whatsapp_app_secret:
        if not verify_signature(body, request.headers.get("X-Hub-Signature-256"), settings.whatsapp_app_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = WhatsAppWebhookPayload.model_validate_json(body or b"{}")
    except ValidationError as e:
        logger.warning("Malformed webhook payload", extra={"context": {"error": str(e)}})
        return WebhookResponse(success=False, message="Malformed payload")

    response = WebhookResponse(success=True, message="OK", details=[])

    for entry in payload.entry:
        for change in entry.changes:
            value = change.value
            phone_number_id = value.metadata.phone_number_id if value.metadata else None
            ctx = resolve_tenant_context(db, phone_number_id)
            if ctx is None:
                response.skipped += len(value.messages) + len(value.statuses)
                continue

            for event in inbound_events_from_value(value):
                try:
                    outcome = orchestrator.ingest(db, ctx, event)
                except InvalidEventError as e:
                    logger.warning(
                        "Inbound event rejected",
                        extra={"context": {"external_message_id": event.external_message_id, "error": str(e)}},
                    )
                    response.skipped += 1
                    continue
                except IngestionError:
                    return _storage_unavailable(background_tasks)

                if outcome.duplicate:
                    response.duplicates += 1
                    continue
                response.processed += 1
                response.details.append(
                    {"external_message_id": event.external_message_id, "message_id": str(outcome.message_id)}
                )
                background_tasks.add_task(orchestrator.respond_detached, ctx, outcome)

            try:
                for status_event in status_events_from_value(value):
                    if apply_status(
                        db,
                        ctx,
                        status_event.external_message_id,
                        status_event.new_status,
                        status_event.timestamp,
                        reference=status_event.reference,
                    ):
                        response.statuses_applied += 1
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Delivery statuses could not be stored", extra={"context": {"error": str(e)}})
                return _storage_unavailable(background_tasks)

    logger.info(
        "Webhook processed",
        extra={
            "context": {
                "processed": response.processed,
                "duplicates": response.duplicates,
                "statuses_applied": response.statuses_applied,
                "skipped": response.skipped,
            }
        },
    )
    return response
