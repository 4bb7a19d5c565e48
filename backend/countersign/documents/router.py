import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.blobs.base import BlobStore
from countersign.common.context import RequestContext
from countersign.common.identity import Sender
from countersign.common.pagination import PaginatedResponse
from countersign.database import get_db
from countersign.dependencies import get_blob_store, get_current_sender, get_request_context
from countersign.documents.models import PDF_MIME_TYPE
from countersign.documents.schemas import DocumentResponse, DocumentUploadResponse, document_response
from countersign.documents.service import (
    delete_document,
    get_owned_document,
    list_documents,
    open_document,
    upload_document,
)

router = APIRouter()


@router.get("", response_model=PaginatedResponse)
async def list_pool_documents(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    limit: int = 25,
    offset: int = 0,
    unbound_only: bool = False,
):
    limit = max(1, min(limit, 100))
    offset = max(0, offset)
    docs, total = await list_documents(db, sender.id, limit, offset, unbound_only)
    items = [document_response(d).model_dump(mode="json") for d in docs]
    return PaginatedResponse.create(items=items, total=total, limit=limit, offset=offset)


@router.post("", response_model=DocumentUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_new_document(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
    file: UploadFile = File(...),
):
    content = await file.read()
    doc = await upload_document(db, blobs, sender.id, file.filename or "unnamed.pdf", content, ctx)
    return DocumentUploadResponse(
        id=doc.uuid, filename=doc.filename, size_bytes=doc.size_bytes, page_count=doc.page_count, sha256=doc.sha256
    )


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document_detail(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    return document_response(await get_owned_document(db, sender.id, document_id))


@router.get("/{document_id}/content")
async def download_document(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
):
    doc = await get_owned_document(db, sender.id, document_id)
    content = await open_document(blobs, doc)
    return Response(
        content=content,
        media_type=PDF_MIME_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{doc.filename}"'},
    )


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pool_document(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    blobs: Annotated[BlobStore, Depends(get_blob_store)],
):
    doc = await get_owned_document(db, sender.id, document_id)
    await delete_document(db, blobs, doc)
