import uuid
from datetime import datetime

from pydantic import BaseModel


class CertificateResponse(BaseModel):
    id: uuid.UUID
    envelope_id: uuid.UUID
    version: str
    pdf_sha256: str
    created_at: datetime
    certificate_data: dict
