import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.chain import Actor, append_event
from countersign.audit.models import AuditEventType
from countersign.common.base_models import as_utc, rfc3339, utcnow
from countersign.envelopes.models import ACTIVE_STATUSES, Envelope, EnvelopeStatus
from countersign.envelopes.state import is_overdue, transition
from countersign.store.transaction import flush, store_errors

logger = logging.getLogger(__name__)


async def expire_envelope(db: AsyncSession, envelope: Envelope, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    transition(envelope, EnvelopeStatus.expired)
    envelope.expired_at = now
    envelope.next_reminder_at = None
    await append_event(
        db,
        envelope.id,
        AuditEventType.envelope_expired,
        {"expires_at": rfc3339(as_utc(envelope.expires_at))},
        actor=Actor.system(),
        created_at=now,
    )
    await flush(db)
    logger.info("Envelope %s expired", envelope.uuid)


async def expire_if_overdue(db: AsyncSession, envelope: Envelope, now: Optional[datetime] = None) -> bool:
    """Lazy check applied at view and sign time."""
    now = now or utcnow()
    if is_overdue(envelope, now):
        await expire_envelope(db, envelope, now)
        return True
    return False


async def expire_overdue(db: AsyncSession, now: Optional[datetime] = None, batch_size: int = 500) -> int:
    now = now or utcnow()
    async with store_errors():
        result = await db.execute(
            select(Envelope)
            .where(
                Envelope.status.in_(ACTIVE_STATUSES),
                Envelope.expires_at.is_not(None),
                Envelope.expires_at <= now,
            )
            .order_by(Envelope.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
    expired = 0
    for envelope in result.scalars().all():
        if await expire_if_overdue(db, envelope, now):
            expired += 1
    return expired
