"""
Hash-chained, per-envelope audit log.

Each event links to its predecessor in the same envelope:

    event_hash = SHA-256(prev_event_hash + "\\n" + canonical({type, metadata, created_at}))

hex-encoded lowercase; the first event of an envelope uses "" as its
predecessor. Appends run under the envelope row lock, and the unique
``(envelope_id, sequence)`` constraint turns any concurrent fork into a
StoreConflict instead of a silently branched chain.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.models import ActorType, AuditEvent, AuditEventType
from countersign.common.base_models import rfc3339, utcnow
from countersign.common.canonical import canonical_json
from countersign.common.context import RequestContext
from countersign.envelopes.models import Envelope
from countersign.store.transaction import flush, store_errors

logger = logging.getLogger(__name__)


EVENT_CATEGORY = {
    AuditEventType.envelope_created: "envelope",
    AuditEventType.envelope_updated: "envelope",
    AuditEventType.envelope_sent: "envelope",
    AuditEventType.envelope_completed: "envelope",
    AuditEventType.envelope_voided: "envelope",
    AuditEventType.envelope_expired: "envelope",
    AuditEventType.recipient_added: "recipient",
    AuditEventType.recipient_removed: "recipient",
    AuditEventType.recipient_viewed: "recipient",
    AuditEventType.recipient_signed: "recipient",
    AuditEventType.recipient_declined: "recipient",
    AuditEventType.document_added: "document",
    AuditEventType.document_removed: "document",
    AuditEventType.field_added: "field",
    AuditEventType.field_removed: "field",
    AuditEventType.field_updated: "field",
    AuditEventType.reminder_sent: "system",
    AuditEventType.workflow_executed: "system",
}


@dataclass(frozen=True)
class Actor:
    type: ActorType
    id: Optional[str] = None

    @classmethod
    def user(cls, user_id) -> "Actor":
        return cls(ActorType.user, str(user_id))

    @classmethod
    def recipient(cls, recipient_id) -> "Actor":
        return cls(ActorType.recipient, str(recipient_id))

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorType.system, None)


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    checked: int
    break_at: Optional[str] = None  # uuid of the first event that fails

    def to_dict(self) -> dict:
        return {"ok": self.ok, "checked": self.checked, "break_at": self.break_at}


def event_hash_input(event_type: str, metadata: dict, created_at: datetime) -> str:
    return canonical_json({"type": event_type, "metadata": metadata, "created_at": rfc3339(created_at)})


def compute_event_hash(prev_hash: str, event_type: str, metadata: dict, created_at: datetime) -> str:
    content = (prev_hash or "") + "\n" + event_hash_input(event_type, metadata, created_at)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


async def tail_event(db: AsyncSession, envelope_id: int) -> Optional[AuditEvent]:
    result = await db.execute(
        select(AuditEvent).where(AuditEvent.envelope_id == envelope_id).order_by(AuditEvent.sequence.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def lock_envelope_row(db: AsyncSession, envelope_id: int) -> Optional[Envelope]:
    """Take the per-envelope DB lock (no-op on SQLite, which serialises writers)."""
    async with store_errors():
        result = await db.execute(select(Envelope).where(Envelope.id == envelope_id).with_for_update())
    return result.scalar_one_or_none()


async def append_event(
    db: AsyncSession,
    envelope_id: int,
    event_type: AuditEventType,
    metadata: Optional[dict[str, Any]] = None,
    actor: Optional[Actor] = None,
    ctx: Optional[RequestContext] = None,
    created_at: Optional[datetime] = None,
) -> AuditEvent:
    actor = actor or Actor.system()
    metadata = metadata or {}
    # Store exactly what was hashed.
    metadata = json.loads(canonical_json(metadata))
    created_at = created_at or utcnow()

    await lock_envelope_row(db, envelope_id)
    async with store_errors():
        prev = await tail_event(db, envelope_id)
    prev_hash = prev.event_hash if prev else ""
    sequence = prev.sequence + 1 if prev else 1

    event = AuditEvent(
        envelope_id=envelope_id,
        sequence=sequence,
        event_type=event_type,
        category=EVENT_CATEGORY[event_type],
        actor_type=actor.type,
        actor_id=actor.id,
        metadata_json=metadata,
        ip_address=ctx.ip_address if ctx else None,
        user_agent=ctx.user_agent if ctx else None,
        created_at=created_at,
        prev_event_hash=prev_hash,
        event_hash=compute_event_hash(prev_hash, event_type.value, metadata, created_at),
    )
    db.add(event)
    await flush(db)
    return event


async def list_events(db: AsyncSession, envelope_id: int) -> list[AuditEvent]:
    async with store_errors():
        result = await db.execute(
            select(AuditEvent).where(AuditEvent.envelope_id == envelope_id).order_by(AuditEvent.sequence.asc())
        )
    return list(result.scalars().all())


def verify_events(events: list[AuditEvent]) -> ChainVerification:
    prev_hash = ""
    for index, event in enumerate(events):
        expected = compute_event_hash(prev_hash, event.event_type.value, event.metadata_json or {}, event.created_at)
        if event.sequence != index + 1 or event.prev_event_hash != prev_hash or event.event_hash != expected:
            return ChainVerification(ok=False, checked=index, break_at=str(event.uuid))
        prev_hash = event.event_hash
    return ChainVerification(ok=True, checked=len(events))


async def verify_chain(db: AsyncSession, envelope_id: int) -> ChainVerification:
    result = verify_events(await list_events(db, envelope_id))
    if not result.ok:
        logger.error("Audit chain break in envelope %s at event %s", envelope_id, result.break_at)
    return result
