import uuid
from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import GUID, IdentityBase, utcnow

PDF_MIME_TYPE = "application/pdf"


class Document(IdentityBase):
    """An uploaded PDF.

    Lives in its uploader's pool until bound to an envelope through
    ``EnvelopeDocument``; a document is bound to at most one envelope.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("page_count >= 1", name="ck_documents_page_count"),
        CheckConstraint(f"mime_type = '{PDF_MIME_TYPE}'", name="ck_documents_mime_type"),
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1000), unique=True, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False, default=PDF_MIME_TYPE)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
