from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import IdentityBase, utcnow


class Certificate(IdentityBase):
    __tablename__ = "certificates"

    envelope_id: Mapped[int] = mapped_column(Integer, ForeignKey("envelopes.id"), nullable=False, unique=True)
    version: Mapped[str] = mapped_column(String(10), nullable=False)
    certificate_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    pdf_storage_key: Mapped[str] = mapped_column(String(1000), nullable=False)
    pdf_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
