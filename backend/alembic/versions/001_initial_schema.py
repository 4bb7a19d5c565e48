"""Initial schema: documents, envelopes, audit chain, evidence, certificates

Revision ID: 0001
Revises:
Create Date: 2026-10-16
"""

from collections.abc import Sequence
from typing import Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID

from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "envelopestatus": ("draft", "sent", "in_progress", "completed", "voided", "expired"),
    "envelopepriority": ("low", "medium", "high", "urgent"),
    "reminderfrequency": ("none", "daily", "weekly"),
    "recipientrole": ("signer", "approver", "viewer", "form_filler"),
    "authenticationmethod": ("email", "access_code", "sms", "id"),
    "recipientstatus": ("pending", "sent", "viewed", "signed", "declined"),
    "fieldtype": ("signature", "initial", "text", "date", "checkbox", "dropdown", "number"),
    "workflowtrigger": ("on_send", "on_view", "on_sign", "on_complete", "on_void"),
    "auditeventtype": (
        "envelope_created",
        "envelope_updated",
        "recipient_added",
        "recipient_removed",
        "document_added",
        "document_removed",
        "field_added",
        "field_removed",
        "field_updated",
        "envelope_sent",
        "recipient_viewed",
        "recipient_signed",
        "recipient_declined",
        "envelope_completed",
        "envelope_voided",
        "envelope_expired",
        "reminder_sent",
        "workflow_executed",
    ),
    "auditactortype": ("user", "system", "recipient"),
    "evidencestatus": ("staged", "committed", "orphan_unsigned"),
}


def _enum(name: str) -> ENUM:
    return ENUM(*ENUMS[name], name=name, create_type=False)


def _identity() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("uuid", UUID(as_uuid=True), nullable=False, unique=True, index=True),
    ]


def _envelope_fk() -> sa.Column:
    return sa.Column(
        "envelope_id",
        sa.Integer(),
        sa.ForeignKey("envelopes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


def upgrade() -> None:
    # Create enums via raw SQL
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{v}'" for v in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({labels})")

    # Documents
    op.create_table(
        "documents",
        *_identity(),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("filename", sa.String(500), nullable=False),
        sa.Column("storage_key", sa.String(1000), nullable=False, unique=True),
        sa.Column("mime_type", sa.String(255), nullable=False, server_default="application/pdf"),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("page_count >= 1", name="ck_documents_page_count"),
        sa.CheckConstraint("mime_type = 'application/pdf'", name="ck_documents_mime_type"),
    )

    # Envelopes
    op.create_table(
        "envelopes",
        *_identity(),
        sa.Column("sender_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("sender_email", sa.String(255), nullable=False),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("subject", sa.String(500), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("priority", _enum("envelopepriority"), nullable=False, server_default="medium"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_frequency", _enum("reminderfrequency"), nullable=False, server_default="none"),
        sa.Column("next_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("status", _enum("envelopestatus"), nullable=False, server_default="draft", index=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("void_reason", sa.Text(), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "envelope_documents",
        *_identity(),
        _envelope_fk(),
        sa.Column(
            "document_id",
            sa.Integer(),
            sa.ForeignKey("documents.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("document_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("document_order >= 1", name="ck_envelope_documents_order"),
    )

    # Recipients
    op.create_table(
        "recipients",
        *_identity(),
        _envelope_fk(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("role", _enum("recipientrole"), nullable=False, server_default="signer"),
        sa.Column("routing_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("authentication_method", _enum("authenticationmethod"), nullable=False, server_default="email"),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("send_reminders", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", _enum("recipientstatus"), nullable=False, server_default="pending"),
        sa.Column("access_token_hash", sa.String(64), nullable=True, index=True),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("last_reminded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_ip", sa.String(45), nullable=True),
        sa.Column("signed_user_agent", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("envelope_id", "email", name="uq_recipients_envelope_email"),
        sa.CheckConstraint("routing_order >= 1", name="ck_recipients_routing_order"),
    )

    # Fields
    op.create_table(
        "fields",
        *_identity(),
        _envelope_fk(),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "recipient_id",
            sa.Integer(),
            sa.ForeignKey("recipients.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("field_type", _enum("fieldtype"), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.Column("width", sa.Float(), nullable=False),
        sa.Column("height", sa.Float(), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("properties", sa.JSON(), nullable=False),
        sa.Column("default_value", sa.Text(), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("page >= 1", name="ck_fields_page"),
        sa.CheckConstraint("x >= 0 AND x <= 1 AND y >= 0 AND y <= 1", name="ck_fields_origin"),
        sa.CheckConstraint("width > 0 AND width <= 1 AND height > 0 AND height <= 1", name="ck_fields_size"),
    )

    # Workflows
    op.create_table(
        "envelope_workflows",
        *_identity(),
        _envelope_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("trigger", _enum("workflowtrigger"), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Audit chain
    op.create_table(
        "audit_events",
        *_identity(),
        _envelope_fk(),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", _enum("auditeventtype"), nullable=False),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("actor_type", _enum("auditactortype"), nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prev_event_hash", sa.String(64), nullable=False, server_default=""),
        sa.Column("event_hash", sa.String(64), nullable=False, index=True),
        sa.UniqueConstraint("envelope_id", "sequence", name="uq_audit_events_envelope_sequence"),
    )

    # Signature evidence
    op.create_table(
        "signature_evidences",
        *_identity(),
        _envelope_fk(),
        sa.Column(
            "recipient_id",
            sa.Integer(),
            sa.ForeignKey("recipients.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", _enum("evidencestatus"), nullable=False, server_default="staged"),
        sa.Column("provider", sa.String(100), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False, index=True),
        sa.Column("signature", sa.LargeBinary(), nullable=True),
        sa.Column("tsa_token", sa.LargeBinary(), nullable=True),
        sa.Column("certificate_chain", sa.JSON(), nullable=False),
        sa.Column("failure_reason", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("envelope_id", "recipient_id", "sequence", name="uq_signature_evidences_sequence"),
    )

    # Certificates of completion
    op.create_table(
        "certificates",
        *_identity(),
        sa.Column("envelope_id", sa.Integer(), sa.ForeignKey("envelopes.id"), nullable=False, unique=True),
        sa.Column("version", sa.String(10), nullable=False),
        sa.Column("certificate_data", sa.JSON(), nullable=False),
        sa.Column("pdf_storage_key", sa.String(1000), nullable=False),
        sa.Column("pdf_sha256", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("certificates")
    op.drop_table("signature_evidences")
    op.drop_table("audit_events")
    op.drop_table("envelope_workflows")
    op.drop_table("fields")
    op.drop_table("recipients")
    op.drop_table("envelope_documents")
    op.drop_table("envelopes")
    op.drop_table("documents")

    # Drop enums
    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
