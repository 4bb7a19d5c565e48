import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.chain import Actor, append_event
from countersign.audit.models import AuditEventType
from countersign.common.base_models import as_utc, utcnow
from countersign.envelopes.expiry import expire_if_overdue
from countersign.envelopes.models import (
    ACTING_ROLES,
    ACTIVE_STATUSES,
    Envelope,
    Recipient,
    RecipientStatus,
    ReminderFrequency,
)
from countersign.envelopes.queries import load_recipients
from countersign.store.transaction import flush, store_errors
from countersign.tasks.notifications import notify

logger = logging.getLogger(__name__)

CADENCE = {
    ReminderFrequency.daily: timedelta(days=1),
    ReminderFrequency.weekly: timedelta(days=7),
}

REMINDABLE_STATUSES = frozenset({RecipientStatus.sent, RecipientStatus.viewed})


async def remind_envelope(db: AsyncSession, envelope: Envelope, now: datetime) -> int:
    """Remind every eligible recipient of one active envelope."""
    if await expire_if_overdue(db, envelope, now):
        return 0
    if envelope.status not in ACTIVE_STATUSES:
        return 0

    scheduled_at = as_utc(envelope.next_reminder_at)
    one_shot = scheduled_at is not None and scheduled_at <= now
    interval = CADENCE.get(envelope.reminder_frequency)

    sent = 0
    for recipient in await load_recipients(db, envelope.id):
        if recipient.role not in ACTING_ROLES or recipient.status not in REMINDABLE_STATUSES:
            continue
        if not recipient.send_reminders:
            continue

        reason = None
        if one_shot:
            reason = "scheduled"
        elif interval is not None:
            last_contact = as_utc(recipient.last_reminded_at) or as_utc(recipient.sent_at)
            if last_contact is None or last_contact + interval <= now:
                reason = envelope.reminder_frequency.value
        if reason is None:
            continue

        recipient.last_reminded_at = now
        await append_event(
            db,
            envelope.id,
            AuditEventType.reminder_sent,
            {"recipient_id": str(recipient.uuid), "email": recipient.email, "reason": reason},
            actor=Actor.system(),
            created_at=now,
        )
        notify(db, "reminder", envelope, recipient)
        sent += 1

    if one_shot:
        envelope.next_reminder_at = None
    await flush(db)
    return sent


def _cadence_due(frequency: ReminderFrequency, interval: timedelta, now: datetime):
    """Envelopes on ``frequency`` with at least one recipient whose reminder is due."""
    last_contact = func.coalesce(Recipient.last_reminded_at, Recipient.sent_at)
    due_recipient = (
        select(Recipient.id)
        .where(
            Recipient.envelope_id == Envelope.id,
            Recipient.role.in_(ACTING_ROLES),
            Recipient.status.in_(REMINDABLE_STATUSES),
            Recipient.send_reminders.is_(True),
            or_(last_contact.is_(None), last_contact <= now - interval),
        )
        .exists()
    )
    return and_(Envelope.reminder_frequency == frequency, due_recipient)


async def send_due_reminders(db: AsyncSession, now: Optional[datetime] = None, batch_size: int = 500) -> int:
    """Periodic sweep; expired, voided and completed envelopes get nothing.

    Only envelopes with a reminder actually due are selected, so a batch is
    never filled by envelopes that would be skipped.
    """
    now = now or utcnow()
    async with store_errors():
        result = await db.execute(
            select(Envelope)
            .where(
                Envelope.status.in_(ACTIVE_STATUSES),
                or_(
                    Envelope.next_reminder_at <= now,
                    *(_cadence_due(frequency, interval, now) for frequency, interval in CADENCE.items()),
                ),
            )
            .order_by(Envelope.id)
            .limit(batch_size)
        )
    total = 0
    for envelope in result.scalars().all():
        total += await remind_envelope(db, envelope, now)
    if total:
        logger.info("Sent %d envelope reminders", total)
    return total
