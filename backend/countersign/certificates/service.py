import asyncio
import hashlib
import logging
import uuid
from io import BytesIO
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from countersign.audit.chain import lock_envelope_row
from countersign.blobs.base import BlobNotFound, BlobStore, certificate_key
from countersign.certificates.builder import build_certificate_data
from countersign.certificates.models import Certificate
from countersign.certificates.pdf import render_certificate_pdf
from countersign.certificates.schemas import CertificateResponse
from countersign.common.base_models import as_utc
from countersign.common.context import RequestContext
from countersign.common.errors import CertificateExists, IntegrityError, InvalidState, NotFound, StoreConflict
from countersign.config import settings as default_settings
from countersign.envelopes.models import Envelope, EnvelopeStatus
from countersign.store.transaction import flush, store_errors, transaction

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


async def find_certificate(db: AsyncSession, envelope_id: int) -> Optional[Certificate]:
    async with store_errors():
        result = await db.execute(select(Certificate).where(Certificate.envelope_id == envelope_id))
    return result.scalar_one_or_none()


def _require_completed(envelope: Envelope) -> None:
    if envelope.status != EnvelopeStatus.completed:
        raise InvalidState("certificate is only available for completed envelopes")


async def create_certificate(
    db: AsyncSession, blobs: BlobStore, envelope: Envelope, settings=default_settings
) -> Certificate:
    """Build and store the certificate; raises CertificateExists if one is stored already.

    The PDF blob is written before the row. If the row cannot be inserted the
    blob is deleted again so no unreferenced PDF is left behind.
    """
    _require_completed(envelope)
    existing = await find_certificate(db, envelope.id)
    if existing is not None:
        raise CertificateExists(existing)

    certificate_id = uuid.uuid4()
    data = await build_certificate_data(db, envelope, certificate_id, settings)
    pdf = render_certificate_pdf(data)
    key = certificate_key()
    await asyncio.to_thread(blobs.put, key, BytesIO(pdf), len(pdf), PDF_CONTENT_TYPE)

    certificate = Certificate(
        uuid=certificate_id,
        envelope_id=envelope.id,
        version=settings.certificate_version,
        certificate_data=data,
        pdf_storage_key=key,
        pdf_sha256=hashlib.sha256(pdf).hexdigest(),
    )
    db.add(certificate)
    try:
        await flush(db)
    except StoreConflict:
        await asyncio.to_thread(blobs.delete, key)
        raise
    logger.info("Certificate %s built for envelope %s", certificate_id, envelope.uuid)
    return certificate


async def get_or_create_certificate(
    session_factory: async_sessionmaker[AsyncSession],
    blobs: BlobStore,
    envelope_id: int,
    ctx: Optional[RequestContext] = None,
    settings=default_settings,
) -> Certificate:
    """Idempotent: concurrent builders converge on the single stored certificate."""
    try:
        async with transaction(session_factory, ctx) as db:
            envelope = await lock_envelope_row(db, envelope_id)
            if envelope is None:
                raise NotFound("envelope not found")
            # Returned from a committed session, so the row stays loaded.
            existing = await find_certificate(db, envelope.id)
            if existing is not None:
                return existing
            return await create_certificate(db, blobs, envelope, settings)
    except StoreConflict:
        async with transaction(session_factory) as db:
            existing = await find_certificate(db, envelope_id)
        if existing is None:
            raise
        return existing


async def read_certificate_pdf(blobs: BlobStore, certificate: Certificate) -> bytes:
    def _read() -> bytes:
        stream = blobs.get(certificate.pdf_storage_key)
        try:
            return stream.read()
        finally:
            stream.close()

    try:
        return await asyncio.to_thread(_read)
    except BlobNotFound as exc:
        logger.error("Certificate PDF %s missing from blob store", certificate.pdf_storage_key)
        raise IntegrityError(key=certificate.pdf_storage_key) from exc


def certificate_response(certificate: Certificate, envelope: Envelope) -> CertificateResponse:
    return CertificateResponse(
        id=certificate.uuid,
        envelope_id=envelope.uuid,
        version=certificate.version,
        pdf_sha256=certificate.pdf_sha256,
        created_at=as_utc(certificate.created_at),
        certificate_data=certificate.certificate_data,
    )


async def envelope_certificate(
    session_factory: async_sessionmaker[AsyncSession],
    blobs: BlobStore,
    envelope: Envelope,
    ctx: Optional[RequestContext] = None,
) -> Certificate:
    """The stored certificate of a completed envelope, built on first request."""
    _require_completed(envelope)
    return await get_or_create_certificate(session_factory, blobs, envelope.id, ctx)
