import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import GUID, IdentityBase, TimestampMixin, utcnow


class EnvelopeStatus(str, enum.Enum):
    draft = "draft"
    sent = "sent"
    in_progress = "in_progress"
    completed = "completed"
    voided = "voided"
    expired = "expired"


TERMINAL_STATUSES = frozenset({EnvelopeStatus.completed, EnvelopeStatus.voided, EnvelopeStatus.expired})
ACTIVE_STATUSES = frozenset({EnvelopeStatus.sent, EnvelopeStatus.in_progress})


class Priority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class ReminderFrequency(str, enum.Enum):
    none = "none"
    daily = "daily"
    weekly = "weekly"


class RecipientRole(str, enum.Enum):
    signer = "signer"
    approver = "approver"
    viewer = "viewer"
    form_filler = "form_filler"


# Roles that must sign for the envelope to complete.
COMPLETING_ROLES = frozenset({RecipientRole.signer, RecipientRole.approver})
# Roles that take a turn in the routing order.
ACTING_ROLES = frozenset({RecipientRole.signer, RecipientRole.approver, RecipientRole.form_filler})


class AuthenticationMethod(str, enum.Enum):
    email = "email"
    access_code = "access_code"
    sms = "sms"
    id = "id"


class RecipientStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    viewed = "viewed"
    signed = "signed"
    declined = "declined"


# A recipient in one of these statuses still blocks later routing slots.
OPEN_RECIPIENT_STATUSES = frozenset({RecipientStatus.pending, RecipientStatus.sent, RecipientStatus.viewed})


class FieldType(str, enum.Enum):
    signature = "signature"
    initial = "initial"
    text = "text"
    date = "date"
    checkbox = "checkbox"
    dropdown = "dropdown"
    number = "number"


class Envelope(IdentityBase, TimestampMixin):
    __tablename__ = "envelopes"

    sender_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    sender_email: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[Priority] = mapped_column(Enum(Priority, name="envelopepriority"), default=Priority.medium, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_frequency: Mapped[ReminderFrequency] = mapped_column(
        Enum(ReminderFrequency, name="reminderfrequency"), default=ReminderFrequency.none, nullable=False
    )
    next_reminder_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    status: Mapped[EnvelopeStatus] = mapped_column(
        Enum(EnvelopeStatus, name="envelopestatus"), default=EnvelopeStatus.draft, nullable=False, index=True
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    void_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EnvelopeDocument(IdentityBase):
    __tablename__ = "envelope_documents"
    __table_args__ = (CheckConstraint("document_order >= 1", name="ck_envelope_documents_order"),)

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    # A document is bound to at most one envelope.
    document_id: Mapped[int] = mapped_column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True)
    document_order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Recipient(IdentityBase):
    __tablename__ = "recipients"
    __table_args__ = (
        UniqueConstraint("envelope_id", "email", name="uq_recipients_envelope_email"),
        CheckConstraint("routing_order >= 1", name="ck_recipients_routing_order"),
    )

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)  # stored lower-cased
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[RecipientRole] = mapped_column(Enum(RecipientRole, name="recipientrole"), default=RecipientRole.signer, nullable=False)
    routing_order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    permissions: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    authentication_method: Mapped[AuthenticationMethod] = mapped_column(
        Enum(AuthenticationMethod, name="authenticationmethod"), default=AuthenticationMethod.email, nullable=False
    )
    custom_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    send_reminders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[RecipientStatus] = mapped_column(
        Enum(RecipientStatus, name="recipientstatus"), default=RecipientStatus.pending, nullable=False
    )
    access_token_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    access_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_reminded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    signed_user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Field(IdentityBase, TimestampMixin):
    __tablename__ = "fields"
    __table_args__ = (
        CheckConstraint("page >= 1", name="ck_fields_page"),
        CheckConstraint("x >= 0 AND x <= 1 AND y >= 0 AND y <= 1", name="ck_fields_origin"),
        CheckConstraint("width > 0 AND width <= 1 AND height > 0 AND height <= 1", name="ck_fields_size"),
    )

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    document_id: Mapped[int] = mapped_column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    recipient_id: Mapped[int] = mapped_column(Integer, ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    field_type: Mapped[FieldType] = mapped_column(Enum(FieldType, name="fieldtype"), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    page: Mapped[int] = mapped_column(Integer, nullable=False)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[float] = mapped_column(Float, nullable=False)
    height: Mapped[float] = mapped_column(Float, nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Typed per-variant payload (options, bounds, formats), validated by schemas.FieldProperties.
    properties: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    default_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkflowTrigger(str, enum.Enum):
    on_send = "on_send"
    on_view = "on_view"
    on_sign = "on_sign"
    on_complete = "on_complete"
    on_void = "on_void"


class EnvelopeWorkflow(IdentityBase):
    __tablename__ = "envelope_workflows"

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger: Mapped[WorkflowTrigger] = mapped_column(Enum(WorkflowTrigger, name="workflowtrigger"), nullable=False)
    conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    actions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
