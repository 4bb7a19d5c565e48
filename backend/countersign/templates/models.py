import uuid
from typing import Optional

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from countersign.common.base_models import GUID, IdentityBase, TimestampMixin


class EnvelopeTemplate(IdentityBase, TimestampMixin):
    """Reusable envelope layout: envelope settings, recipient slots and field placement.

    Recipients are stored as anonymous slots (role, routing order, options)
    and fields refer to documents and slots by position, so a new envelope is
    built from a template by supplying real recipients and documents.
    """

    __tablename__ = "envelope_templates"

    owner_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # No foreign key: the template outlives the envelope it was taken from.
    source_envelope_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)
    template_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
