import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from engage.config import settings
from engage.database import SessionLocal, get_db
from engage.logging_config import get_logger, setup_logging
from engage.routers import conversations, webhook
from engage.services.automation_service import process_pending_jobs
from engage.services.delivery import WhatsAppCloudProvider

setup_logging(settings.log_level)

app = FastAPI(
    title="Engage Pipeline",
    description="Inbound WhatsApp ingestion, automation and AI replies",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(conversations.router)

worker_logger = get_logger("automation_worker")
_automation_worker_task: asyncio.Task | None = None


def _is_automation_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.automation_worker_enabled


async def _automation_worker_loop() -> None:
    delivery = WhatsAppCloudProvider(
        graph_url=settings.whatsapp_graph_url,
        timeout_seconds=settings.delivery_timeout_seconds,
    )
    interval_seconds = max(settings.automation_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            processed = await asyncio.to_thread(
                process_pending_jobs,
                SessionLocal,
                delivery,
                limit=settings.automation_batch_limit,
                max_attempts=settings.automation_max_attempts,
                backoff_seconds=settings.automation_retry_backoff_seconds,
                lease_seconds=settings.automation_job_lease_seconds,
            )
            if processed:
                worker_logger.info("Automation worker processed", extra={"context": {"jobs": processed}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Automation worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_automation_worker() -> None:
    global _automation_worker_task
    if not _is_automation_worker_enabled():
        return
    if _automation_worker_task is None or _automation_worker_task.done():
        _automation_worker_task = asyncio.create_task(_automation_worker_loop())
        worker_logger.info("Automation worker started")


@app.on_event("shutdown")
async def stop_automation_worker() -> None:
    global _automation_worker_task
    if _automation_worker_task is None:
        return
    _automation_worker_task.cancel()
    try:
        await _automation_worker_task
    except asyncio.CancelledError:
        pass
    _automation_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
