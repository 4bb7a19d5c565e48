import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.common.errors import NotFound
from countersign.documents.models import Document
from countersign.envelopes.models import Envelope, EnvelopeDocument, EnvelopeWorkflow, Field, Recipient, WorkflowTrigger
from countersign.store.transaction import store_errors


async def find_envelope(db: AsyncSession, envelope_uuid: uuid.UUID, for_update: bool = False) -> Optional[Envelope]:
    query = select(Envelope).where(Envelope.uuid == envelope_uuid)
    if for_update:
        query = query.with_for_update()
    async with store_errors():
        result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_owned_envelope(
    db: AsyncSession, sender_id: uuid.UUID, envelope_uuid: uuid.UUID, for_update: bool = False
) -> Envelope:
    """Envelopes owned by someone else are reported exactly like missing ones."""
    envelope = await find_envelope(db, envelope_uuid, for_update=for_update)
    if envelope is None or envelope.sender_id != sender_id:
        raise NotFound("envelope not found")
    return envelope


async def load_documents(db: AsyncSession, envelope_id: int) -> list[tuple[Document, int]]:
    """Bound documents with their order, in envelope order."""
    async with store_errors():
        result = await db.execute(
            select(Document, EnvelopeDocument.document_order)
            .join(EnvelopeDocument, EnvelopeDocument.document_id == Document.id)
            .where(EnvelopeDocument.envelope_id == envelope_id)
            .order_by(EnvelopeDocument.document_order, Document.id)
        )
    return [(row[0], row[1]) for row in result.all()]


async def load_recipients(db: AsyncSession, envelope_id: int) -> list[Recipient]:
    async with store_errors():
        result = await db.execute(
            select(Recipient).where(Recipient.envelope_id == envelope_id).order_by(Recipient.routing_order, Recipient.id)
        )
    return list(result.scalars().all())


async def load_fields(db: AsyncSession, envelope_id: int, recipient_id: Optional[int] = None) -> list[Field]:
    query = select(Field).where(Field.envelope_id == envelope_id)
    if recipient_id is not None:
        query = query.where(Field.recipient_id == recipient_id)
    async with store_errors():
        result = await db.execute(query.order_by(Field.id))
    return list(result.scalars().all())


async def load_workflows(
    db: AsyncSession, envelope_id: int, trigger: Optional[WorkflowTrigger] = None, active_only: bool = False
) -> list[EnvelopeWorkflow]:
    query = select(EnvelopeWorkflow).where(EnvelopeWorkflow.envelope_id == envelope_id)
    if trigger is not None:
        query = query.where(EnvelopeWorkflow.trigger == trigger)
    if active_only:
        query = query.where(EnvelopeWorkflow.is_active.is_(True))
    async with store_errors():
        result = await db.execute(query.order_by(EnvelopeWorkflow.id))
    return list(result.scalars().all())


async def count_rows(db: AsyncSession, column, *criteria) -> int:
    async with store_errors():
        result = await db.execute(select(func.count(column)).where(*criteria))
    return result.scalar_one()
