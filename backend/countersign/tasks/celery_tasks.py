"""
Celery tasks: post-commit follow-ups and the periodic sweeps.

Each task runs its coroutine on a private event loop with its own engine, so
nothing is shared with the API process's connection pool.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from countersign.blobs.factory import create_blob_store
from countersign.celery_app import celery
from countersign.certificates.service import get_or_create_certificate
from countersign.common.context import background_context
from countersign.config import settings
from countersign.envelopes.expiry import expire_overdue
from countersign.envelopes.reminders import send_due_reminders
from countersign.envelopes.workflows import execute_workflows
from countersign.store.transaction import transaction
from countersign.tasks.notifications import encode_payload, signed_headers

logger = logging.getLogger(__name__)


def _run(work: Callable[[async_sessionmaker[AsyncSession]], Awaitable[Any]]) -> Any:
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _main():
        try:
            return await work(session_factory)
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_main())
    finally:
        loop.close()


# ── Envelope follow-ups ───────────────────────────────────────────────────────


@celery.task(name="countersign.build_certificate", bind=True, max_retries=3)
def build_certificate(self, envelope_id: int):
    """Build and store the certificate of completion for a completed envelope."""
    blobs = create_blob_store(settings)

    async def _work(session_factory):
        certificate = await get_or_create_certificate(session_factory, blobs, envelope_id, background_context())
        return str(certificate.uuid)

    try:
        certificate_id = _run(_work)
    except Exception as exc:
        logger.exception("Certificate build failed for envelope %s", envelope_id)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
    return {"envelope_id": envelope_id, "certificate_id": certificate_id}


@celery.task(name="countersign.run_workflows", bind=True, max_retries=3)
def run_envelope_workflows(self, envelope_id: int, trigger: str, event_data: Optional[dict] = None):
    async def _work(session_factory):
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            return await execute_workflows(
                session_factory, envelope_id, trigger, event_data or {}, http_client=client, ctx=background_context()
            )

    try:
        fired = _run(_work)
    except Exception as exc:
        logger.exception("Workflow run %s failed for envelope %s", trigger, envelope_id)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
    return {"envelope_id": envelope_id, "trigger": trigger, "fired": fired}


@celery.task(name="countersign.deliver_notification", bind=True, max_retries=3)
def deliver_notification(self, payload: dict):
    """Post a recipient notification to the email module's webhook."""
    url = settings.notification_webhook_url
    if not url:
        logger.debug("No notification webhook configured, dropping %s for %s", payload.get("kind"), payload.get("recipient_email"))
        return {"delivered": False}

    body = encode_payload(payload)
    try:
        response = httpx.post(
            url,
            content=body,
            headers=signed_headers(body, settings.notification_webhook_secret or None),
            timeout=settings.provider_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Notification %s to %s failed: %s", payload.get("kind"), payload.get("recipient_email"), exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
    return {"delivered": True, "status_code": response.status_code}


# ── Periodic sweeps ───────────────────────────────────────────────────────────


@celery.task(name="countersign.send_due_reminders", bind=True, max_retries=3)
def send_reminders(self):
    async def _work(session_factory):
        async with transaction(session_factory, background_context()) as db:
            return await send_due_reminders(db)

    try:
        sent = _run(_work)
    except Exception as exc:
        logger.exception("Reminder sweep failed")
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
    logger.info("Reminder sweep sent %d reminders", sent)
    return {"sent": sent}


@celery.task(name="countersign.expire_overdue_envelopes", bind=True, max_retries=3)
def expire_overdue_envelopes(self):
    async def _work(session_factory):
        async with transaction(session_factory, background_context()) as db:
            return await expire_overdue(db)

    try:
        expired = _run(_work)
    except Exception as exc:
        logger.exception("Expiry sweep failed")
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
    logger.info("Expiry sweep expired %d envelopes", expired)
    return {"expired": expired}


# Register periodic tasks
celery.conf.beat_schedule = getattr(celery.conf, "beat_schedule", {})
celery.conf.beat_schedule["send-due-reminders"] = {
    "task": "countersign.send_due_reminders",
    "schedule": 3600.0,  # Hourly
}
celery.conf.beat_schedule["expire-overdue-envelopes"] = {
    "task": "countersign.expire_overdue_envelopes",
    "schedule": 300.0,  # Every 5 minutes
}
