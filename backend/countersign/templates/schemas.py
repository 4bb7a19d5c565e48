import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field

from countersign.envelopes.models import AuthenticationMethod, FieldType, Priority, RecipientRole, ReminderFrequency


class TemplateCreate(BaseModel):
    envelope_id: uuid.UUID
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10_000)


class TemplateEnvelopeSettings(BaseModel):
    title: str
    subject: Optional[str] = None
    message: Optional[str] = None
    priority: Priority = Priority.medium
    reminder_frequency: ReminderFrequency = ReminderFrequency.none


class TemplateDocumentSlot(BaseModel):
    order: int
    filename: str
    page_count: int


class TemplateRecipientSlot(BaseModel):
    placeholder: str
    role: RecipientRole
    routing_order: int
    permissions: dict[str, Any] = Field(default_factory=dict)
    authentication_method: AuthenticationMethod = AuthenticationMethod.email
    custom_message: Optional[str] = None
    send_reminders: bool = True


class TemplateField(BaseModel):
    document_index: int
    recipient_index: int
    type: FieldType
    page: int
    x: float
    y: float
    width: float
    height: float
    name: Optional[str] = None
    required: bool = True
    properties: dict[str, Any] = Field(default_factory=dict)
    default_value: Optional[str] = None


class TemplateData(BaseModel):
    envelope: TemplateEnvelopeSettings
    documents: list[TemplateDocumentSlot]
    recipients: list[TemplateRecipientSlot]
    fields: list[TemplateField]


class TemplateSummary(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str]
    source_envelope_id: Optional[uuid.UUID]
    usage_count: int
    created_at: datetime
    updated_at: datetime


class TemplateResponse(TemplateSummary):
    data: TemplateData


class RecipientAssignment(BaseModel):
    """Fills the template's recipient slot at the same position."""

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    custom_message: Optional[str] = Field(default=None, max_length=10_000)


class EnvelopeFromTemplate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    subject: Optional[str] = Field(default=None, max_length=500)
    message: Optional[str] = Field(default=None, max_length=10_000)
    expires_at: Optional[datetime] = None
    recipients: list[RecipientAssignment] = Field(min_length=1, max_length=500)
    document_ids: list[uuid.UUID] = Field(min_length=1, max_length=100)
