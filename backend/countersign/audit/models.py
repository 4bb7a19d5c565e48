import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import IdentityBase


class AuditEventType(str, enum.Enum):
    envelope_created = "envelope_created"
    envelope_updated = "envelope_updated"
    recipient_added = "recipient_added"
    recipient_removed = "recipient_removed"
    document_added = "document_added"
    document_removed = "document_removed"
    field_added = "field_added"
    field_removed = "field_removed"
    field_updated = "field_updated"
    envelope_sent = "envelope_sent"
    recipient_viewed = "recipient_viewed"
    recipient_signed = "recipient_signed"
    recipient_declined = "recipient_declined"
    envelope_completed = "envelope_completed"
    envelope_voided = "envelope_voided"
    envelope_expired = "envelope_expired"
    reminder_sent = "reminder_sent"
    workflow_executed = "workflow_executed"


class ActorType(str, enum.Enum):
    user = "user"
    system = "system"
    recipient = "recipient"


class AuditEvent(IdentityBase):
    """Append-only, hash-chained event; totally ordered per envelope by ``sequence``.

    The unique ``(envelope_id, sequence)`` constraint rejects a forked chain
    even if two writers read the same tail.
    """

    __tablename__ = "audit_events"
    __table_args__ = (UniqueConstraint("envelope_id", "sequence", name="uq_audit_events_envelope_sequence"),)

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[AuditEventType] = mapped_column(Enum(AuditEventType, name="auditeventtype"), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_type: Mapped[ActorType] = mapped_column(Enum(ActorType, name="auditactortype"), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_event_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
