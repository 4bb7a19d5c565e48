import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from countersign.blobs.base import BlobStore
from countersign.certificates.schemas import CertificateResponse
from countersign.certificates.service import certificate_response, envelope_certificate, read_certificate_pdf
from countersign.common.context import RequestContext
from countersign.common.identity import Sender
from countersign.common.pagination import PaginatedResponse
from countersign.config import settings
from countersign.database import get_db, get_session_factory
from countersign.dependencies import get_blob_store, get_current_sender, get_request_context
from countersign.documents.hasher import DocumentHasher
from countersign.envelopes.models import EnvelopeStatus
from countersign.envelopes.queries import get_owned_envelope, load_documents, load_recipients
from countersign.envelopes.schemas import (
    AuditEventResponse,
    BulkEnvelopeUpdate,
    BulkUpdateResult,
    ChainVerifyResponse,
    DocumentAttach,
    EnvelopeCreate,
    EnvelopeResponse,
    EnvelopeUpdate,
    FieldCreate,
    FieldResponse,
    FieldUpdate,
    IntegrityReport,
    IssuedToken,
    ProgressResponse,
    RecipientCreate,
    RecipientResponse,
    SendResponse,
    VoidRequest,
    WorkflowCreate,
    WorkflowResponse,
)
from countersign.envelopes.service import (
    add_field,
    add_recipient,
    add_workflow,
    attach_document,
    audit_event_response,
    bulk_update_envelopes,
    create_envelope,
    delete_envelope,
    envelope_summary,
    envelope_view,
    field_response,
    get_audit_trail,
    get_progress,
    list_envelopes,
    list_workflows,
    recipient_response,
    reissue_access_token,
    remove_document,
    remove_field,
    remove_recipient,
    send_envelope,
    update_envelope,
    update_field,
    verify_envelope_chain,
    void_envelope,
    workflow_response,
)
from countersign.signing.integrity import check_envelope_integrity, evidence_responses
from countersign.signing.schemas import EvidenceResponse
from countersign.store.transaction import transaction

router = APIRouter()


# ── Envelopes ──────────────────────────────────────────────────────────────────


@router.post("", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def create(
    data: EnvelopeCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope = await create_envelope(db, sender, data, ctx)
    return await envelope_view(db, envelope)


@router.get("", response_model=PaginatedResponse)
async def list_all(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    envelope_status: Optional[EnvelopeStatus] = None,
    limit: int = 25,
    offset: int = 0,
):
    limit = max(1, min(limit, 100))
    offset = max(0, offset)
    envelopes, total = await list_envelopes(db, sender.id, envelope_status, limit, offset)
    items = [envelope_summary(e).model_dump(mode="json") for e in envelopes]
    return PaginatedResponse.create(items=items, total=total, limit=limit, offset=offset)


@router.post("/bulk/update", response_model=BulkUpdateResult)
async def bulk_update(
    data: BulkEnvelopeUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    return await bulk_update_envelopes(db, sender, data, ctx)


@router.get("/{envelope_id}", response_model=EnvelopeResponse)
async def get_detail(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return await envelope_view(db, envelope)


@router.patch("/{envelope_id}", response_model=EnvelopeResponse)
async def update(
    envelope_id: uuid.UUID,
    patch: EnvelopeUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope = await update_envelope(db, sender, envelope_id, patch, ctx)
    return await envelope_view(db, envelope)


@router.delete("/{envelope_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
):
    await delete_envelope(db, blobs, sender, envelope_id)


@router.post("/{envelope_id}/send", response_model=SendResponse)
async def send(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope, tokens = await send_envelope(db, sender, envelope_id, ctx)
    return SendResponse(envelope=await envelope_view(db, envelope), tokens=tokens)


@router.post("/{envelope_id}/void", response_model=EnvelopeResponse)
async def void(
    envelope_id: uuid.UUID,
    data: VoidRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope = await void_envelope(db, sender, envelope_id, data.reason, ctx)
    return await envelope_view(db, envelope)


# ── Documents ──────────────────────────────────────────────────────────────────


@router.post("/{envelope_id}/documents", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def attach(
    envelope_id: uuid.UUID,
    data: DocumentAttach,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    await attach_document(db, sender, envelope_id, data, ctx)
    return await envelope_view(db, await get_owned_envelope(db, sender.id, envelope_id))


@router.delete("/{envelope_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def detach(
    envelope_id: uuid.UUID,
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    await remove_document(db, sender, envelope_id, document_id, ctx)


# ── Recipients ─────────────────────────────────────────────────────────────────


@router.post("/{envelope_id}/recipients", response_model=RecipientResponse, status_code=status.HTTP_201_CREATED)
async def create_recipient(
    envelope_id: uuid.UUID,
    data: RecipientCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    recipient = await add_recipient(db, sender, envelope_id, data, ctx)
    return recipient_response(recipient)


@router.delete("/{envelope_id}/recipients/{recipient_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_recipient(
    envelope_id: uuid.UUID,
    recipient_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    await remove_recipient(db, sender, envelope_id, recipient_id, ctx)


@router.post("/{envelope_id}/recipients/{recipient_id}/token", response_model=IssuedToken)
async def reissue_token(
    envelope_id: uuid.UUID,
    recipient_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    return await reissue_access_token(db, sender, envelope_id, recipient_id)


# ── Fields ─────────────────────────────────────────────────────────────────────


async def _field_view(db: AsyncSession, sender: Sender, envelope_id: uuid.UUID, field) -> FieldResponse:
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    documents = {doc.id: doc.uuid for doc, _ in await load_documents(db, envelope.id)}
    recipients = {r.id: r.uuid for r in await load_recipients(db, envelope.id)}
    return field_response(field, documents, recipients)


@router.post("/{envelope_id}/fields", response_model=FieldResponse, status_code=status.HTTP_201_CREATED)
async def create_field(
    envelope_id: uuid.UUID,
    data: FieldCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    field = await add_field(db, sender, envelope_id, data, ctx)
    return await _field_view(db, sender, envelope_id, field)


@router.patch("/{envelope_id}/fields/{field_id}", response_model=FieldResponse)
async def change_field(
    envelope_id: uuid.UUID,
    field_id: uuid.UUID,
    patch: FieldUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    field = await update_field(db, sender, envelope_id, field_id, patch, ctx)
    return await _field_view(db, sender, envelope_id, field)


@router.delete("/{envelope_id}/fields/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_field(
    envelope_id: uuid.UUID,
    field_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    await remove_field(db, sender, envelope_id, field_id, ctx)


# ── Workflows ──────────────────────────────────────────────────────────────────


@router.post("/{envelope_id}/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    envelope_id: uuid.UUID,
    data: WorkflowCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    return workflow_response(await add_workflow(db, sender, envelope_id, data))


@router.get("/{envelope_id}/workflows", response_model=list[WorkflowResponse])
async def get_workflows(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return [workflow_response(w) for w in await list_workflows(db, envelope)]


# ── Tracking ───────────────────────────────────────────────────────────────────


@router.get("/{envelope_id}/progress", response_model=ProgressResponse)
async def progress(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return await get_progress(db, envelope)


@router.get("/{envelope_id}/audit", response_model=list[AuditEventResponse])
async def audit_trail(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return [audit_event_response(e) for e in await get_audit_trail(db, envelope)]


@router.get("/{envelope_id}/audit/verify", response_model=ChainVerifyResponse)
async def verify_audit_chain(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    result = await verify_envelope_chain(db, envelope)
    return ChainVerifyResponse(**result.to_dict())


@router.get("/{envelope_id}/evidences", response_model=list[EvidenceResponse])
async def evidences(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return await evidence_responses(db, envelope)


@router.get("/{envelope_id}/integrity", response_model=IntegrityReport)
async def integrity(
    envelope_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return await check_envelope_integrity(db, envelope, DocumentHasher.from_settings(blobs, settings), ctx)


# ── Certificate of completion ──────────────────────────────────────────────────


async def _certificate(session_factory, blobs, sender: Sender, envelope_id: uuid.UUID, ctx: RequestContext):
    async with transaction(session_factory, ctx) as db:
        envelope = await get_owned_envelope(db, sender.id, envelope_id)
    return envelope, await envelope_certificate(session_factory, blobs, envelope, ctx)


@router.get("/{envelope_id}/certificate", response_model=CertificateResponse)
async def certificate_json(
    envelope_id: uuid.UUID,
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope, certificate = await _certificate(session_factory, blobs, sender, envelope_id, ctx)
    return certificate_response(certificate, envelope)


@router.get("/{envelope_id}/certificate/pdf")
async def certificate_pdf(
    envelope_id: uuid.UUID,
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope, certificate = await _certificate(session_factory, blobs, sender, envelope_id, ctx)
    content = await read_certificate_pdf(blobs, certificate)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="certificate-{envelope.uuid}.pdf"'},
    )
