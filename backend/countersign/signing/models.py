import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import IdentityBase, utcnow


class EvidenceStatus(str, enum.Enum):
    staged = "staged"
    committed = "committed"
    orphan_unsigned = "orphan_unsigned"


class SignatureEvidence(IdentityBase):
    """Append-only record of one act of signing.

    A row is staged before the provider call and either committed with the
    provider's output or marked ``orphan_unsigned`` and retained.
    """

    __tablename__ = "signature_evidences"
    __table_args__ = (
        UniqueConstraint("envelope_id", "recipient_id", "sequence", name="uq_signature_evidences_sequence"),
    )

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient_id: Mapped[int] = mapped_column(Integer, ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[EvidenceStatus] = mapped_column(
        Enum(EvidenceStatus, name="evidencestatus"), default=EvidenceStatus.staged, nullable=False
    )
    provider: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Canonical payload stored verbatim: these are the bytes that were signed.
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    signature: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    tsa_token: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    certificate_chain: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    committed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
