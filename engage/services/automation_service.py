"""Automation dispatch through the automation_jobs outbox.

The ingestion path only enqueues a job; the worker started in ``engage.main``
claims due jobs, renders the rule's text and sends it through the delivery
adapter. Each inbound message yields at most one job per tenant.
"""

import uuid
from datetime import timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from engage.database import insert_ignore
from engage.logging_config import get_logger
from engage.models import AutomationJob, AutomationRule, Contact, Conversation
from engage.models.types import utcnow
from engage.schemas.automation import TriggerKind
from engage.services.delivery.base import DeliveryProvider
from engage.services.message_service import SenderKind, save_outbound_message
from engage.services.tenant_service import TenantContext, get_tenant_context

logger = get_logger("automation_service")

DEFAULT_GREETING = "Hello {{first_name}}! Thanks for reaching out, we'll get back to you shortly."

# Welcome-style rules reach a contact once; keyword rules answer every match.
SEND_ONCE_KINDS = {TriggerKind.NEW_CONTACT.value, TriggerKind.FIRST_MESSAGE.value}


class JobStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


def _sent_once_rule_ids(db: Session, contact: Contact) -> set:
    rows = (
        db.query(AutomationJob.rule_id)
        .filter(
            AutomationJob.contact_id == contact.id,
            AutomationJob.trigger_kind.in_(SEND_ONCE_KINDS),
            AutomationJob.status != JobStatus.FAILED,
        )
        .all()
    )
    return {row.rule_id for row in rows}


def load_enabled_rules(db: Session, ctx: TenantContext, contact: Optional[Contact] = None) -> List[AutomationRule]:
    """Enabled rules of the tenant, oldest first.

    With ``contact``, welcome-style rules already dispatched to that contact are left out.
    """
    rules = (
        db.query(AutomationRule)
        .filter(AutomationRule.tenant_id == ctx.tenant_id, AutomationRule.is_enabled.is_(True))
        .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        .all()
    )
    if contact is None:
        return rules
    sent = _sent_once_rule_ids(db, contact)
    return [rule for rule in rules if rule.id not in sent]


def enqueue_dispatch(
    db: Session,
    ctx: TenantContext,
    rule: AutomationRule,
    contact: Contact,
    conversation: Optional[Conversation],
    inbound_message_id: str,
) -> bool:
    """Queue the rule's action for this inbound message. Returns True if queued.

    A second job for the same inbound message is a no-op.
    """
    trigger_kind = rule.trigger.type
    now = utcnow()
    queued = insert_ignore(
        db,
        AutomationJob,
        {
            "id": uuid.uuid4(),
            "tenant_id": ctx.tenant_id,
            "rule_id": rule.id,
            "contact_id": contact.id,
            "conversation_id": conversation.id if conversation is not None else None,
            "inbound_message_id": inbound_message_id,
            "trigger_kind": trigger_kind,
            "status": JobStatus.PENDING,
            "attempts": 0,
            "created_at": now,
            "updated_at": now,
        },
    )
    if queued:
        logger.info(
            "Automation queued",
            extra={
                "context": {
                    "tenant_id": str(ctx.tenant_id),
                    "rule_id": str(rule.id),
                    "trigger": trigger_kind,
                    "inbound_message_id": inbound_message_id,
                }
            },
        )
    return queued


def claim_pending_jobs(db: Session, limit: int = 10, lease_seconds: float = 300.0) -> List[AutomationJob]:
    """Move up to ``limit`` due jobs to PROCESSING and return them.

    A PROCESSING job not touched for ``lease_seconds`` belongs to a worker that
    died mid-run and is claimed again. Rows locked by another worker are skipped.
    """
    now = utcnow()
    due = (AutomationJob.status == JobStatus.PENDING) & (
        AutomationJob.next_attempt_at.is_(None) | (AutomationJob.next_attempt_at <= now)
    )
    expired = (AutomationJob.status == JobStatus.PROCESSING) & (
        AutomationJob.updated_at <= now - timedelta(seconds=lease_seconds)
    )
    jobs = (
        db.query(AutomationJob)
        .filter(due | expired)
        .order_by(AutomationJob.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        if job.status == JobStatus.PROCESSING:
            logger.warning(
                "Reclaiming stale automation job",
                extra={"context": {"job_id": str(job.id), "attempts": job.attempts}},
            )
        job.status = JobStatus.PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.updated_at = now
    db.commit()
    return jobs


def render_action_text(rule: AutomationRule, contact: Contact) -> str:
    if rule.action_text and rule.action_text.strip():
        text = rule.action_text
    elif rule.template is not None and rule.template.body:
        text = rule.template.body
    else:
        text = DEFAULT_GREETING

    full_name = (contact.name or "").strip()
    first_name = full_name.split()[0] if full_name else ""
    return (
        text.replace("{{first_name}}", first_name)
        .replace("{{full_name}}", full_name)
        .replace("{{phone}}", contact.address or "")
    )


def _retry_or_fail(job: AutomationJob, error: str, max_attempts: int, backoff_seconds: float) -> None:
    now = utcnow()
    job.last_error = error
    job.updated_at = now
    if (job.attempts or 0) >= max_attempts:
        job.status = JobStatus.FAILED
        logger.error(
            "Automation failed permanently",
            extra={"context": {"job_id": str(job.id), "attempts": job.attempts, "error": error}},
        )
    else:
        job.status = JobStatus.PENDING
        job.next_attempt_at = now + timedelta(seconds=backoff_seconds * max(job.attempts or 1, 1))
        logger.warning(
            "Automation delivery failed, will retry",
            extra={"context": {"job_id": str(job.id), "attempts": job.attempts, "error": error}},
        )


def run_job(
    db: Session,
    job: AutomationJob,
    delivery: DeliveryProvider,
    max_attempts: int = 5,
    backoff_seconds: float = 5.0,
) -> str:
    """Send one claimed job and record the outcome. Returns the job's new status."""
    ctx = get_tenant_context(db, job.tenant_id)
    rule = db.query(AutomationRule).filter(AutomationRule.id == job.rule_id).first()
    contact = db.query(Contact).filter(Contact.id == job.contact_id).first()
    if ctx is None or rule is None or contact is None:
        job.status = JobStatus.FAILED
        job.last_error = "tenant, rule or contact no longer exists"
        job.updated_at = utcnow()
        db.commit()
        return job.status

    if not rule.is_enabled:
        job.status = JobStatus.FAILED
        job.last_error = "rule_disabled"
        job.updated_at = utcnow()
        db.commit()
        logger.info("Automation rule disabled before send", extra={"context": {"job_id": str(job.id)}})
        return job.status

    text = render_action_text(rule, contact)
    try:
        receipt = delivery.send(ctx, contact.address, text)
    except Exception as e:
        _retry_or_fail(job, str(e) or type(e).__name__, max_attempts, backoff_seconds)
        db.commit()
        return job.status

    if not receipt.accepted:
        _retry_or_fail(job, receipt.error or "rejected", max_attempts, backoff_seconds)
        db.commit()
        return job.status

    if job.conversation_id is not None:
        save_outbound_message(
            db,
            ctx,
            job.conversation_id,
            text,
            sender_kind=SenderKind.BOT,
            external_id=receipt.provider_message_id,
            message_metadata={"automation_rule_id": str(rule.id), "trigger": job.trigger_kind},
        )
    job.status = JobStatus.DONE
    job.last_error = None
    job.updated_at = utcnow()
    db.commit()
    logger.info(
        "Automation sent",
        extra={"context": {"job_id": str(job.id), "rule_id": str(rule.id), "contact_id": str(contact.id)}},
    )
    return job.status


def process_pending_jobs(
    session_factory: Callable[[], Session],
    delivery: DeliveryProvider,
    limit: int = 10,
    max_attempts: int = 5,
    backoff_seconds: float = 5.0,
    lease_seconds: float = 300.0,
) -> int:
    """One worker tick: claim due jobs and run them. Returns how many were run.

    A job that raises is put back for retry; the rest of the batch still runs.
    """
    db = session_factory()
    try:
        claimed = claim_pending_jobs(db, limit=limit, lease_seconds=lease_seconds)
        job_ids: List[UUID] = [job.id for job in claimed]
        for job_id in job_ids:
            job = db.query(AutomationJob).filter(AutomationJob.id == job_id).first()
            if job is None:
                continue
            try:
                run_job(db, job, delivery, max_attempts=max_attempts, backoff_seconds=backoff_seconds)
            except Exception as e:
                db.rollback()
                logger.exception(
                    "Automation job crashed",
                    extra={"context": {"job_id": str(job_id), "error": str(e)}},
                )
                _record_crash(db, job_id, str(e) or type(e).__name__, max_attempts, backoff_seconds)
        return len(job_ids)
    finally:
        db.close()


def _record_crash(db: Session, job_id: UUID, error: str, max_attempts: int, backoff_seconds: float) -> None:
    # Left in PROCESSING if this fails too; the lease brings it back.
    try:
        job = db.query(AutomationJob).filter(AutomationJob.id == job_id).first()
        if job is not None:
            _retry_or_fail(job, error, max_attempts, backoff_seconds)
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Automation job could not be recorded",
            extra={"context": {"job_id": str(job_id), "error": str(e)}},
        )
