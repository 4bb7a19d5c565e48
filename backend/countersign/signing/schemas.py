import uuid
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, model_validator

from countersign.envelopes.models import FieldType, RecipientRole
from countersign.envelopes.schemas import EnvelopeDocumentResponse, FieldResponse, check_geometry

# ── Requests ───────────────────────────────────────────────────────────────────


class FieldValue(BaseModel):
    field_id: uuid.UUID
    value: Union[bool, str]


class NewFieldValue(BaseModel):
    """A field placed by the recipient while signing, with its value."""

    document_id: uuid.UUID
    type: FieldType
    page: int = Field(ge=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(gt=0.0, le=1.0)
    height: float = Field(gt=0.0, le=1.0)
    name: Optional[str] = Field(default=None, max_length=255)
    value: Union[bool, str]

    @model_validator(mode="after")
    def validate_geometry(self):
        check_geometry(self.x, self.y, self.width, self.height)
        return self


class SignRequest(BaseModel):
    field_values: list[FieldValue] = Field(default_factory=list, max_length=5000)
    new_fields: list[NewFieldValue] = Field(default_factory=list, max_length=500)


class DeclineRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


# ── Responses ──────────────────────────────────────────────────────────────────


class DocHash(BaseModel):
    document_id: uuid.UUID
    sha256: str


class SignResponse(BaseModel):
    ok: bool = True
    recipient_id: uuid.UUID
    recipient_status: str
    envelope_status: str
    evidence_id: uuid.UUID
    sequence: int
    signed_at: datetime
    hashes: list[DocHash]
    replayed: bool = False


class SigningRecipient(BaseModel):
    id: uuid.UUID
    name: str
    email: str
    role: RecipientRole
    status: str
    routing_order: int


class RecipientView(BaseModel):
    envelope_id: uuid.UUID
    title: str
    subject: Optional[str]
    message: Optional[str]
    sender_name: Optional[str]
    sender_email: str
    envelope_status: str
    expires_at: Optional[datetime]
    is_next: bool
    recipient: SigningRecipient
    documents: list[EnvelopeDocumentResponse]
    fields: list[FieldResponse]


class DeclineResponse(BaseModel):
    recipient_id: uuid.UUID
    status: str
    declined_at: datetime
    envelope_status: str


class EvidenceResponse(BaseModel):
    id: uuid.UUID
    recipient_id: uuid.UUID
    sequence: int
    status: str
    provider: Optional[str]
    payload: dict[str, Any]
    payload_hash: str
    tsa_present: bool
    failure_reason: Optional[str]
    created_at: datetime
    committed_at: Optional[datetime]
