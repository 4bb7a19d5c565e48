import uuid
from datetime import datetime

from pydantic import BaseModel


class DocumentResponse(BaseModel):
    id: uuid.UUID
    filename: str
    mime_type: str
    size_bytes: int
    page_count: int
    sha256: str
    created_at: datetime


class DocumentUploadResponse(BaseModel):
    id: uuid.UUID
    filename: str
    size_bytes: int
    page_count: int
    sha256: str


def document_response(doc) -> DocumentResponse:
    return DocumentResponse(
        id=doc.uuid,
        filename=doc.filename,
        mime_type=doc.mime_type,
        size_bytes=doc.size_bytes,
        page_count=doc.page_count,
        sha256=doc.sha256,
        created_at=doc.created_at,
    )
