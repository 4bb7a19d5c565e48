import asyncio
import hashlib
import logging
import uuid
from io import BytesIO
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.blobs.base import BlobNotFound, BlobStore, document_key
from countersign.common.context import RequestContext
from countersign.common.errors import IntegrityError, NotFound, ValidationError
from countersign.config import settings
from countersign.documents.models import PDF_MIME_TYPE, Document
from countersign.envelopes.models import EnvelopeDocument
from countersign.store.transaction import flush, store_errors
from countersign.tasks.dispatch import on_commit

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


def count_pdf_pages(content: bytes) -> int:
    try:
        reader = PdfReader(BytesIO(content))
        pages = len(reader.pages)
    except (PyPdfError, ValueError, KeyError, TypeError) as exc:
        raise ValidationError("file is not a readable PDF") from exc
    if pages < 1:
        raise ValidationError("PDF has no pages")
    return pages


def validate_pdf(content: bytes, max_bytes: Optional[int] = None) -> int:
    """Check size and format; returns the page count."""
    max_bytes = max_bytes or settings.max_document_bytes
    if not content:
        raise ValidationError("file is empty")
    if len(content) > max_bytes:
        raise ValidationError(f"file too large (max {max_bytes} bytes)")
    if not content.startswith(PDF_MAGIC):
        raise ValidationError("only application/pdf documents are accepted")
    return count_pdf_pages(content)


async def upload_document(
    db: AsyncSession,
    blobs: BlobStore,
    owner_id: uuid.UUID,
    filename: str,
    content: bytes,
    ctx: Optional[RequestContext] = None,
) -> Document:
    page_count = validate_pdf(content)
    if ctx is not None:
        ctx.ensure_active()

    doc_uuid = uuid.uuid4()
    storage_key = document_key(doc_uuid)
    await asyncio.to_thread(blobs.put, storage_key, BytesIO(content), len(content), PDF_MIME_TYPE)

    doc = Document(
        uuid=doc_uuid,
        owner_id=owner_id,
        filename=(filename or "unnamed.pdf")[:500],
        storage_key=storage_key,
        mime_type=PDF_MIME_TYPE,
        size_bytes=len(content),
        page_count=page_count,
        sha256=hashlib.sha256(content).hexdigest(),
    )
    db.add(doc)
    try:
        await flush(db)
    except Exception:
        await asyncio.to_thread(blobs.delete, storage_key)
        raise
    logger.info("Stored document %s (%d bytes, %d pages)", doc.uuid, doc.size_bytes, doc.page_count)
    return doc


async def get_owned_document(db: AsyncSession, owner_id: uuid.UUID, document_uuid: uuid.UUID) -> Document:
    async with store_errors():
        result = await db.execute(
            select(Document).where(Document.uuid == document_uuid, Document.owner_id == owner_id)
        )
    doc = result.scalar_one_or_none()
    if doc is None:
        raise NotFound("document not found")
    return doc


async def list_documents(
    db: AsyncSession,
    owner_id: uuid.UUID,
    limit: int = 25,
    offset: int = 0,
    unbound_only: bool = False,
) -> tuple[list[Document], int]:
    query = select(Document).where(Document.owner_id == owner_id)
    count_query = select(func.count(Document.id)).where(Document.owner_id == owner_id)

    if unbound_only:
        bound = select(EnvelopeDocument.document_id)
        query = query.where(Document.id.not_in(bound))
        count_query = count_query.where(Document.id.not_in(bound))

    async with store_errors():
        total = (await db.execute(count_query)).scalar_one()
        result = await db.execute(query.order_by(Document.created_at.desc(), Document.id.desc()).offset(offset).limit(limit))
    return list(result.scalars().all()), total


async def is_bound(db: AsyncSession, document: Document) -> bool:
    async with store_errors():
        result = await db.execute(
            select(func.count(EnvelopeDocument.id)).where(EnvelopeDocument.document_id == document.id)
        )
    return result.scalar_one() > 0


async def delete_document(db: AsyncSession, blobs: BlobStore, document: Document) -> None:
    """Delete an unbound pool document and its blob."""
    if await is_bound(db, document):
        raise ValidationError("document is attached to an envelope")
    key = document.storage_key
    await db.delete(document)
    await flush(db)
    on_commit(db, lambda: blobs.delete(key))


async def open_document(blobs: BlobStore, document: Document) -> bytes:
    def _read() -> bytes:
        stream = blobs.get(document.storage_key)
        try:
            return stream.read()
        finally:
            stream.close()

    try:
        return await asyncio.to_thread(_read)
    except BlobNotFound as exc:
        logger.error("Blob %s missing for document %s", document.storage_key, document.uuid)
        raise IntegrityError(key=document.storage_key) from exc
