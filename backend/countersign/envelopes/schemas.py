import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, HttpUrl, model_validator

from countersign.envelopes.fields import dump_properties
from countersign.envelopes.models import (
    AuthenticationMethod,
    FieldType,
    Priority,
    RecipientRole,
    ReminderFrequency,
    WorkflowTrigger,
)

# ── Envelope ───────────────────────────────────────────────────────────────────


class EnvelopeCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    subject: Optional[str] = Field(default=None, max_length=500)
    message: Optional[str] = Field(default=None, max_length=10_000)
    priority: Priority = Priority.medium
    expires_at: Optional[datetime] = None
    reminder_frequency: ReminderFrequency = ReminderFrequency.none
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnvelopeUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    subject: Optional[str] = Field(default=None, max_length=500)
    message: Optional[str] = Field(default=None, max_length=10_000)
    priority: Optional[Priority] = None
    expires_at: Optional[datetime] = None
    reminder_frequency: Optional[ReminderFrequency] = None
    metadata: Optional[dict[str, Any]] = None


class BulkEnvelopeUpdate(BaseModel):
    envelope_ids: list[uuid.UUID] = Field(min_length=1, max_length=100)
    updates: EnvelopeUpdate


class BulkUpdateError(BaseModel):
    envelope_id: uuid.UUID
    code: str
    message: str


class BulkUpdateResult(BaseModel):
    updated: list[uuid.UUID]
    errors: list[BulkUpdateError]


class VoidRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class DocumentAttach(BaseModel):
    document_id: uuid.UUID
    order: Optional[int] = Field(default=None, ge=1)


# ── Recipients ─────────────────────────────────────────────────────────────────


class RecipientCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    role: RecipientRole = RecipientRole.signer
    routing_order: int = Field(default=1, ge=1)
    permissions: dict[str, Any] = Field(default_factory=dict)
    authentication_method: AuthenticationMethod = AuthenticationMethod.email
    custom_message: Optional[str] = Field(default=None, max_length=10_000)
    send_reminders: bool = True


# ── Fields ─────────────────────────────────────────────────────────────────────


def check_geometry(x, y, width, height):
    if x is not None and width is not None and x + width > 1.0 + 1e-9:
        raise ValueError("field extends past the right edge of the page")
    if y is not None and height is not None and y + height > 1.0 + 1e-9:
        raise ValueError("field extends past the bottom edge of the page")


class FieldCreate(BaseModel):
    document_id: uuid.UUID
    recipient_id: uuid.UUID
    type: FieldType
    page: int = Field(ge=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(gt=0.0, le=1.0)
    height: float = Field(gt=0.0, le=1.0)
    name: Optional[str] = Field(default=None, max_length=255)
    required: bool = True
    properties: dict[str, Any] = Field(default_factory=dict)
    default_value: Optional[str] = Field(default=None, max_length=10_000)

    @model_validator(mode="after")
    def check_field(self):
        check_geometry(self.x, self.y, self.width, self.height)
        self.properties = dump_properties(self.type, self.properties)
        return self


class FieldUpdate(BaseModel):
    recipient_id: Optional[uuid.UUID] = None
    page: Optional[int] = Field(default=None, ge=1)
    x: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    y: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    width: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    height: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    name: Optional[str] = Field(default=None, max_length=255)
    required: Optional[bool] = None
    properties: Optional[dict[str, Any]] = None
    default_value: Optional[str] = Field(default=None, max_length=10_000)


# ── Workflows ──────────────────────────────────────────────────────────────────


class AlwaysCondition(BaseModel):
    type: Literal["always"] = "always"


class StatusEqualsCondition(BaseModel):
    type: Literal["status_equals"] = "status_equals"
    value: str


class CompareCondition(BaseModel):
    type: Literal["gt", "lt", "equals"]
    key: str = Field(min_length=1, max_length=100)
    value: Any


WorkflowCondition = Annotated[
    Union[AlwaysCondition, StatusEqualsCondition, CompareCondition],
    Field(discriminator="type"),
]


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: HttpUrl
    secret: Optional[str] = Field(default=None, max_length=500)


class AddReminderAction(BaseModel):
    type: Literal["add_reminder"] = "add_reminder"
    delay_hours: int = Field(default=24, ge=1, le=24 * 90)


class NotifyRecipientsAction(BaseModel):
    type: Literal["notify_recipients"] = "notify_recipients"
    message: Optional[str] = Field(default=None, max_length=2000)


WorkflowAction = Annotated[
    Union[WebhookAction, AddReminderAction, NotifyRecipientsAction],
    Field(discriminator="type"),
]


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    trigger: WorkflowTrigger
    conditions: list[WorkflowCondition] = Field(default_factory=list, max_length=20)
    actions: list[WorkflowAction] = Field(min_length=1, max_length=20)
    is_active: bool = True


class WorkflowResponse(BaseModel):
    id: uuid.UUID
    name: str
    trigger: WorkflowTrigger
    conditions: list[dict]
    actions: list[dict]
    is_active: bool
    execution_count: int
    last_executed_at: Optional[datetime]
    created_at: datetime


# ── Responses ──────────────────────────────────────────────────────────────────


class RecipientResponse(BaseModel):
    id: uuid.UUID
    email: str
    name: str
    role: RecipientRole
    routing_order: int
    permissions: dict
    authentication_method: AuthenticationMethod
    custom_message: Optional[str]
    send_reminders: bool
    status: str
    sent_at: Optional[datetime]
    viewed_at: Optional[datetime]
    signed_at: Optional[datetime]
    declined_at: Optional[datetime]
    decline_reason: Optional[str]


class FieldResponse(BaseModel):
    id: uuid.UUID
    document_id: uuid.UUID
    recipient_id: uuid.UUID
    type: FieldType
    name: Optional[str]
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool
    properties: dict
    default_value: Optional[str]
    value: Optional[str]
    signed_at: Optional[datetime]


class EnvelopeDocumentResponse(BaseModel):
    id: uuid.UUID
    filename: str
    order: int
    page_count: int
    size_bytes: int
    sha256: str


class RecipientProgress(BaseModel):
    recipient_id: uuid.UUID
    email: str
    status: Literal["pending", "in_progress", "completed"]
    required_fields: int
    completed_fields: int
    percent: float


class ProgressResponse(BaseModel):
    overall_percent: float
    required_fields: int
    completed_fields: int
    recipients: list[RecipientProgress]


class EnvelopeSummary(BaseModel):
    id: uuid.UUID
    title: str
    status: str
    priority: Priority
    sender_email: str
    expires_at: Optional[datetime]
    sent_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class EnvelopeResponse(EnvelopeSummary):
    subject: Optional[str]
    message: Optional[str]
    sender_name: Optional[str]
    reminder_frequency: ReminderFrequency
    metadata: dict
    voided_at: Optional[datetime]
    void_reason: Optional[str]
    expired_at: Optional[datetime]
    documents: list[EnvelopeDocumentResponse] = []
    recipients: list[RecipientResponse] = []
    fields: list[FieldResponse] = []
    progress: Optional[ProgressResponse] = None


class IssuedToken(BaseModel):
    recipient_id: uuid.UUID
    email: str
    access_token: str
    expires_at: datetime


class SendResponse(BaseModel):
    envelope: EnvelopeResponse
    tokens: list[IssuedToken]


class AuditEventResponse(BaseModel):
    id: uuid.UUID
    sequence: int
    event_type: str
    category: str
    actor_type: str
    actor_id: Optional[str]
    metadata: dict
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    prev_event_hash: str
    event_hash: str


class ChainVerifyResponse(BaseModel):
    ok: bool
    checked: int
    break_at: Optional[str] = None


class DocumentIntegrity(BaseModel):
    document_id: uuid.UUID
    filename: str
    upload_sha256: str
    current_sha256: Optional[str]
    evidence_sha256: list[str]
    matches_upload: bool
    evidences_agree: bool


class EvidenceCheck(BaseModel):
    evidence_id: uuid.UUID
    recipient_id: uuid.UUID
    provider: Optional[str]
    signature_valid: bool


class IntegrityReport(BaseModel):
    ok: bool
    chain: ChainVerifyResponse
    documents: list[DocumentIntegrity]
    evidences: list[EvidenceCheck]
    divergent_documents: list[uuid.UUID]
    tampered_documents: list[uuid.UUID]
