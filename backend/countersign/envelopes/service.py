import logging
import uuid
from typing import Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.chain import Actor, append_event, list_events, verify_chain
from countersign.audit.models import AuditEvent, AuditEventType
from countersign.blobs.base import BlobStore
from countersign.common.base_models import as_utc, utcnow
from countersign.common.canonical import canonical_bytes
from countersign.common.context import RequestContext
from countersign.common.errors import InvalidState, NotFound, StoreConflict, ValidationError
from countersign.common.identity import Sender
from countersign.config import settings
from countersign.documents.models import Document
from countersign.documents.service import get_owned_document
from countersign.envelopes.fields import dump_properties, validate_field_value
from countersign.envelopes.models import (
    ACTING_ROLES,
    ACTIVE_STATUSES,
    COMPLETING_ROLES,
    OPEN_RECIPIENT_STATUSES,
    Envelope,
    EnvelopeDocument,
    EnvelopeStatus,
    EnvelopeWorkflow,
    Field,
    Recipient,
    RecipientStatus,
    WorkflowTrigger,
)
from countersign.envelopes.progress import compute_progress
from countersign.envelopes.queries import (
    count_rows,
    get_owned_envelope,
    load_documents,
    load_fields,
    load_recipients,
    load_workflows,
)
from countersign.envelopes.routing import to_activate
from countersign.envelopes.schemas import (
    AuditEventResponse,
    BulkEnvelopeUpdate,
    BulkUpdateError,
    BulkUpdateResult,
    DocumentAttach,
    EnvelopeCreate,
    EnvelopeDocumentResponse,
    EnvelopeResponse,
    EnvelopeSummary,
    EnvelopeUpdate,
    FieldCreate,
    FieldResponse,
    FieldUpdate,
    IssuedToken,
    ProgressResponse,
    RecipientCreate,
    RecipientResponse,
    WorkflowCreate,
    WorkflowResponse,
    check_geometry,
)
from countersign.envelopes.state import require_draft, transition
from countersign.envelopes.tokens import mint_access_token
from countersign.store.transaction import flush, store_errors
from countersign.tasks.dispatch import defer_task, on_commit
from countersign.tasks.notifications import notify

logger = logging.getLogger(__name__)


def _check_payload_size(value, what: str) -> None:
    size = len(canonical_bytes(value))
    if size > settings.payload_size_limit:
        raise ValidationError(f"{what} exceeds the payload size limit ({size} > {settings.payload_size_limit} bytes)")


def _check_cap(current: int, cap: int, what: str) -> None:
    if current > cap:
        raise ValidationError(f"too many {what} (max {cap})")


# ── Presentation ───────────────────────────────────────────────────────────────


def recipient_response(recipient: Recipient) -> RecipientResponse:
    return RecipientResponse(
        id=recipient.uuid,
        email=recipient.email,
        name=recipient.name,
        role=recipient.role,
        routing_order=recipient.routing_order,
        permissions=recipient.permissions or {},
        authentication_method=recipient.authentication_method,
        custom_message=recipient.custom_message,
        send_reminders=recipient.send_reminders,
        status=recipient.status.value,
        sent_at=as_utc(recipient.sent_at),
        viewed_at=as_utc(recipient.viewed_at),
        signed_at=as_utc(recipient.signed_at),
        declined_at=as_utc(recipient.declined_at),
        decline_reason=recipient.decline_reason,
    )


def field_response(field: Field, document_uuids: dict[int, uuid.UUID], recipient_uuids: dict[int, uuid.UUID]) -> FieldResponse:
    return FieldResponse(
        id=field.uuid,
        document_id=document_uuids[field.document_id],
        recipient_id=recipient_uuids[field.recipient_id],
        type=field.field_type,
        name=field.name,
        page=field.page,
        x=field.x,
        y=field.y,
        width=field.width,
        height=field.height,
        required=field.required,
        properties=field.properties or {},
        default_value=field.default_value,
        value=field.value,
        signed_at=as_utc(field.signed_at),
    )


def envelope_summary(envelope: Envelope) -> EnvelopeSummary:
    return EnvelopeSummary(
        id=envelope.uuid,
        title=envelope.title,
        status=envelope.status.value,
        priority=envelope.priority,
        sender_email=envelope.sender_email,
        expires_at=as_utc(envelope.expires_at),
        sent_at=as_utc(envelope.sent_at),
        completed_at=as_utc(envelope.completed_at),
        created_at=as_utc(envelope.created_at),
        updated_at=as_utc(envelope.updated_at),
    )


async def envelope_view(db: AsyncSession, envelope: Envelope) -> EnvelopeResponse:
    documents = await load_documents(db, envelope.id)
    recipients = await load_recipients(db, envelope.id)
    fields = await load_fields(db, envelope.id)
    document_uuids = {doc.id: doc.uuid for doc, _ in documents}
    recipient_uuids = {r.id: r.uuid for r in recipients}

    summary = envelope_summary(envelope).model_dump()
    return EnvelopeResponse(
        **summary,
        subject=envelope.subject,
        message=envelope.message,
        sender_name=envelope.sender_name,
        reminder_frequency=envelope.reminder_frequency,
        metadata=envelope.metadata_json or {},
        voided_at=as_utc(envelope.voided_at),
        void_reason=envelope.void_reason,
        expired_at=as_utc(envelope.expired_at),
        documents=[
            EnvelopeDocumentResponse(
                id=doc.uuid,
                filename=doc.filename,
                order=order,
                page_count=doc.page_count,
                size_bytes=doc.size_bytes,
                sha256=doc.sha256,
            )
            for doc, order in documents
        ],
        recipients=[recipient_response(r) for r in recipients],
        fields=[field_response(f, document_uuids, recipient_uuids) for f in fields],
        progress=compute_progress(recipients, fields),
    )


def audit_event_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.uuid,
        sequence=event.sequence,
        event_type=event.event_type.value,
        category=event.category,
        actor_type=event.actor_type.value,
        actor_id=event.actor_id,
        metadata=event.metadata_json or {},
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        created_at=as_utc(event.created_at),
        prev_event_hash=event.prev_event_hash,
        event_hash=event.event_hash,
    )


def workflow_response(workflow: EnvelopeWorkflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.uuid,
        name=workflow.name,
        trigger=workflow.trigger,
        conditions=workflow.conditions or [],
        actions=workflow.actions or [],
        is_active=workflow.is_active,
        execution_count=workflow.execution_count,
        last_executed_at=as_utc(workflow.last_executed_at),
        created_at=as_utc(workflow.created_at),
    )


# ── Envelope ───────────────────────────────────────────────────────────────────


async def create_envelope(
    db: AsyncSession, sender: Sender, data: EnvelopeCreate, ctx: Optional[RequestContext] = None
) -> Envelope:
    _check_payload_size(data.metadata, "metadata")
    envelope = Envelope(
        sender_id=sender.id,
        sender_email=sender.email,
        sender_name=sender.name,
        title=data.title,
        subject=data.subject,
        message=data.message,
        priority=data.priority,
        expires_at=data.expires_at,
        reminder_frequency=data.reminder_frequency,
        metadata_json=data.metadata,
        status=EnvelopeStatus.draft,
    )
    db.add(envelope)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.envelope_created,
        {"title": envelope.title, "sender_id": str(sender.id)},
        actor=Actor.user(sender.id),
        ctx=ctx,
    )
    return envelope


async def list_envelopes(
    db: AsyncSession,
    sender_id: uuid.UUID,
    status: Optional[EnvelopeStatus] = None,
    limit: int = 25,
    offset: int = 0,
) -> tuple[list[Envelope], int]:
    query = select(Envelope).where(Envelope.sender_id == sender_id)
    count_query = select(func.count(Envelope.id)).where(Envelope.sender_id == sender_id)

    if status:
        query = query.where(Envelope.status == status)
        count_query = count_query.where(Envelope.status == status)

    async with store_errors():
        total = (await db.execute(count_query)).scalar_one()
        result = await db.execute(query.order_by(Envelope.id.desc()).offset(offset).limit(limit))
    return list(result.scalars().all()), total


async def update_envelope(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    patch: EnvelopeUpdate,
    ctx: Optional[RequestContext] = None,
) -> Envelope:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)

    changes = patch.model_dump(exclude_unset=True)
    if "title" in changes and changes["title"] is None:
        raise ValidationError("title cannot be empty")
    if changes.get("metadata") is not None:
        _check_payload_size(changes["metadata"], "metadata")

    changed = []
    for key, value in changes.items():
        attr = "metadata_json" if key == "metadata" else key
        if key == "metadata" and value is None:
            value = {}
        if getattr(envelope, attr) != value:
            setattr(envelope, attr, value)
            changed.append(key)

    if changed:
        await append_event(
            db,
            envelope.id,
            AuditEventType.envelope_updated,
            {"changed": sorted(changed)},
            actor=Actor.user(sender.id),
            ctx=ctx,
        )
    return envelope


async def bulk_update_envelopes(
    db: AsyncSession, sender: Sender, data: BulkEnvelopeUpdate, ctx: Optional[RequestContext] = None
) -> BulkUpdateResult:
    """Apply one patch to many drafts; each envelope succeeds or fails on its own.

    Every rejection in ``update_envelope`` happens before anything is written,
    so a failed envelope leaves no partial change behind.
    """
    updated: list[uuid.UUID] = []
    errors: list[BulkUpdateError] = []
    for envelope_uuid in dict.fromkeys(data.envelope_ids):
        try:
            await update_envelope(db, sender, envelope_uuid, data.updates, ctx)
        except (NotFound, InvalidState, ValidationError) as exc:
            errors.append(BulkUpdateError(envelope_id=envelope_uuid, code=exc.code.value, message=exc.message))
            continue
        updated.append(envelope_uuid)
    logger.info("Bulk update by %s: %d updated, %d rejected", sender.id, len(updated), len(errors))
    return BulkUpdateResult(updated=updated, errors=errors)


async def delete_envelope(db: AsyncSession, blobs: BlobStore, sender: Sender, envelope_uuid: uuid.UUID) -> None:
    """Drafts take their documents with them; voided envelopes release theirs to the pool."""
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    if envelope.status not in (EnvelopeStatus.draft, EnvelopeStatus.voided):
        raise InvalidState("only draft or voided envelopes can be deleted")

    doomed_keys = []
    if envelope.status == EnvelopeStatus.draft:
        for doc, _ in await load_documents(db, envelope.id):
            doomed_keys.append(doc.storage_key)
            await db.delete(doc)
        await flush(db)

    await db.delete(envelope)
    await flush(db)

    for key in doomed_keys:
        on_commit(db, lambda key=key: blobs.delete(key))
    logger.info("Deleted envelope %s (%d documents destroyed)", envelope.uuid, len(doomed_keys))


# ── Documents ──────────────────────────────────────────────────────────────────


async def attach_document(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    data: DocumentAttach,
    ctx: Optional[RequestContext] = None,
) -> EnvelopeDocument:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    document = await get_owned_document(db, sender.id, data.document_id)

    bound = await count_rows(db, EnvelopeDocument.id, EnvelopeDocument.document_id == document.id)
    if bound:
        raise StoreConflict("document is already attached to an envelope")
    existing = await count_rows(db, EnvelopeDocument.id, EnvelopeDocument.envelope_id == envelope.id)
    _check_cap(existing + 1, settings.max_documents_per_envelope, "documents")

    order = data.order
    if order is None:
        async with store_errors():
            current_max = (
                await db.execute(
                    select(func.max(EnvelopeDocument.document_order)).where(EnvelopeDocument.envelope_id == envelope.id)
                )
            ).scalar_one_or_none()
        order = (current_max or 0) + 1

    binding = EnvelopeDocument(envelope_id=envelope.id, document_id=document.id, document_order=order)
    db.add(binding)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.document_added,
        {"document_id": str(document.uuid), "filename": document.filename, "order": order, "sha256": document.sha256},
        actor=Actor.user(sender.id),
        ctx=ctx,
    )
    return binding


async def remove_document(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    document_uuid: uuid.UUID,
    ctx: Optional[RequestContext] = None,
) -> None:
    """Unbind a document; it returns to the uploader's pool and its fields go away."""
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)

    async with store_errors():
        result = await db.execute(
            select(EnvelopeDocument, Document)
            .join(Document, Document.id == EnvelopeDocument.document_id)
            .where(EnvelopeDocument.envelope_id == envelope.id, Document.uuid == document_uuid)
        )
    row = result.first()
    if row is None:
        raise NotFound("document not found")
    binding, document = row

    async with store_errors():
        await db.execute(delete(Field).where(Field.envelope_id == envelope.id, Field.document_id == document.id))
    await db.delete(binding)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.document_removed,
        {"document_id": str(document.uuid), "filename": document.filename},
        actor=Actor.user(sender.id),
        ctx=ctx,
    )


# ── Recipients ─────────────────────────────────────────────────────────────────


async def _get_recipient(db: AsyncSession, envelope: Envelope, recipient_uuid: uuid.UUID) -> Recipient:
    async with store_errors():
        result = await db.execute(
            select(Recipient).where(Recipient.envelope_id == envelope.id, Recipient.uuid == recipient_uuid)
        )
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise NotFound("recipient not found")
    return recipient


async def add_recipient(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    data: RecipientCreate,
    ctx: Optional[RequestContext] = None,
) -> Recipient:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)

    email = str(data.email).strip().lower()
    duplicate = await count_rows(
        db, Recipient.id, Recipient.envelope_id == envelope.id, Recipient.email == email
    )
    if duplicate:
        raise StoreConflict("a recipient with this email is already on the envelope")
    existing = await count_rows(db, Recipient.id, Recipient.envelope_id == envelope.id)
    _check_cap(existing + 1, settings.max_recipients, "recipients")

    recipient = Recipient(
        envelope_id=envelope.id,
        email=email,
        name=data.name,
        role=data.role,
        routing_order=data.routing_order,
        permissions=data.permissions,
        authentication_method=data.authentication_method,
        custom_message=data.custom_message,
        send_reminders=data.send_reminders,
        status=RecipientStatus.pending,
    )
    db.add(recipient)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.recipient_added,
        {
            "recipient_id": str(recipient.uuid),
            "email": recipient.email,
            "role": recipient.role.value,
            "routing_order": recipient.routing_order,
        },
        actor=Actor.user(sender.id),
        ctx=ctx,
    )
    return recipient


async def remove_recipient(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    recipient_uuid: uuid.UUID,
    ctx: Optional[RequestContext] = None,
) -> None:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    recipient = await _get_recipient(db, envelope, recipient_uuid)

    async with store_errors():
        await db.execute(delete(Field).where(Field.recipient_id == recipient.id))
    await db.delete(recipient)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.recipient_removed,
        {"recipient_id": str(recipient.uuid), "email": recipient.email},
        actor=Actor.user(sender.id),
        ctx=ctx,
    )


# ── Fields ─────────────────────────────────────────────────────────────────────


async def _bound_document(db: AsyncSession, envelope: Envelope, document_uuid: uuid.UUID) -> Document:
    async with store_errors():
        result = await db.execute(
            select(Document)
            .join(EnvelopeDocument, EnvelopeDocument.document_id == Document.id)
            .where(EnvelopeDocument.envelope_id == envelope.id, Document.uuid == document_uuid)
        )
    document = result.scalar_one_or_none()
    if document is None:
        raise ValidationError("document is not attached to this envelope")
    return document


async def _assignable_recipient(db: AsyncSession, envelope: Envelope, recipient_uuid: uuid.UUID) -> Recipient:
    async with store_errors():
        result = await db.execute(
            select(Recipient).where(Recipient.envelope_id == envelope.id, Recipient.uuid == recipient_uuid)
        )
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise ValidationError("recipient does not belong to this envelope")
    if recipient.role not in ACTING_ROLES:
        raise ValidationError("fields cannot be assigned to viewers")
    return recipient


async def _get_field(db: AsyncSession, envelope: Envelope, field_uuid: uuid.UUID) -> Field:
    async with store_errors():
        result = await db.execute(select(Field).where(Field.envelope_id == envelope.id, Field.uuid == field_uuid))
    field = result.scalar_one_or_none()
    if field is None:
        raise NotFound("field not found")
    return field


def _check_page(document: Document, page: int) -> None:
    if page > document.page_count:
        raise ValidationError(f"page {page} is outside the document ({document.page_count} pages)")


async def add_field(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    data: FieldCreate,
    ctx: Optional[RequestContext] = None,
) -> Field:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    document = await _bound_document(db, envelope, data.document_id)
    recipient = await _assignable_recipient(db, envelope, data.recipient_id)
    _check_page(document, data.page)

    existing = await count_rows(db, Field.id, Field.envelope_id == envelope.id)
    _check_cap(existing + 1, settings.max_fields, "fields")

    default_value = data.default_value
    if default_value is not None:
        default_value = validate_field_value(data.type, data.properties, default_value)

    field = Field(
        envelope_id=envelope.id,
        document_id=document.id,
        recipient_id=recipient.id,
        field_type=data.type,
        name=data.name,
        page=data.page,
        x=data.x,
        y=data.y,
        width=data.width,
        height=data.height,
        required=data.required,
        properties=data.properties,
        default_value=default_value,
    )
    db.add(field)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.field_added,
        {
            "field_id": str(field.uuid),
            "type": field.field_type.value,
            "document_id": str(document.uuid),
            "recipient_id": str(recipient.uuid),
            "page": field.page,
        },
        actor=Actor.user(sender.id),
        ctx=ctx,
    )
    return field


async def update_field(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    field_uuid: uuid.UUID,
    patch: FieldUpdate,
    ctx: Optional[RequestContext] = None,
) -> Field:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    field = await _get_field(db, envelope, field_uuid)
    changes = patch.model_dump(exclude_unset=True)

    for key in ("page", "x", "y", "width", "height", "required"):
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be null")

    if changes.get("recipient_id") is not None:
        recipient = await _assignable_recipient(db, envelope, changes.pop("recipient_id"))
        changes["recipient_id"] = recipient.id
    else:
        changes.pop("recipient_id", None)

    if "properties" in changes:
        try:
            changes["properties"] = dump_properties(field.field_type, changes["properties"])
        except SchemaValidationError as exc:
            raise ValidationError("invalid field properties") from exc

    geometry = {k: changes.get(k, getattr(field, k)) for k in ("x", "y", "width", "height")}
    try:
        check_geometry(geometry["x"], geometry["y"], geometry["width"], geometry["height"])
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    if "page" in changes:
        document = await db.get(Document, field.document_id)
        _check_page(document, changes["page"])

    properties = changes.get("properties", field.properties)
    if changes.get("default_value") is not None:
        changes["default_value"] = validate_field_value(field.field_type, properties, changes["default_value"])

    changed = []
    for key, value in changes.items():
        if getattr(field, key) != value:
            setattr(field, key, value)
            changed.append(key)

    if changed:
        await flush(db)
        await append_event(
            db,
            envelope.id,
            AuditEventType.field_updated,
            {"field_id": str(field.uuid), "changed": sorted(changed)},
            actor=Actor.user(sender.id),
            ctx=ctx,
        )
    return field


async def remove_field(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    field_uuid: uuid.UUID,
    ctx: Optional[RequestContext] = None,
) -> None:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    field = await _get_field(db, envelope, field_uuid)
    await db.delete(field)
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.field_removed,
        {"field_id": str(field.uuid), "type": field.field_type.value},
        actor=Actor.user(sender.id),
        ctx=ctx,
    )


# ── Lifecycle ──────────────────────────────────────────────────────────────────


async def send_envelope(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    ctx: Optional[RequestContext] = None,
) -> tuple[Envelope, list[IssuedToken]]:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)

    documents = await load_documents(db, envelope.id)
    recipients = await load_recipients(db, envelope.id)
    fields = await load_fields(db, envelope.id)

    if not documents:
        raise ValidationError("envelope has no documents")
    if not any(r.role in COMPLETING_ROLES for r in recipients):
        raise ValidationError("envelope needs at least one signer or approver")
    _check_cap(len(documents), settings.max_documents_per_envelope, "documents")
    _check_cap(len(recipients), settings.max_recipients, "recipients")
    _check_cap(len(fields), settings.max_fields, "fields")

    by_id = {r.id: r for r in recipients}
    for field in fields:
        owner = by_id.get(field.recipient_id)
        if field.required and (owner is None or owner.role not in ACTING_ROLES):
            raise ValidationError("every required field must be assigned to a signing recipient")

    _check_payload_size(
        {
            "metadata": envelope.metadata_json or {},
            "message": envelope.message,
            "fields": [{"properties": f.properties, "default_value": f.default_value} for f in fields],
            "recipients": [{"permissions": r.permissions, "custom_message": r.custom_message} for r in recipients],
        },
        "envelope payload",
    )

    now = utcnow()
    expires_at = as_utc(envelope.expires_at)
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expiration date is in the past")

    transition(envelope, EnvelopeStatus.sent)
    envelope.sent_at = now

    activated = to_activate(recipients)
    for recipient in activated:
        recipient.status = RecipientStatus.sent
        recipient.sent_at = now

    # Plaintext tokens are never stored; later slots are flagged for the email
    # module to hold until their "your_turn" notification.
    tokens = []
    for recipient in recipients:
        if recipient.role not in ACTING_ROLES:
            continue
        minted = mint_access_token(recipient, settings.access_token_bytes, settings.access_token_ttl_days)
        tokens.append(
            IssuedToken(
                recipient_id=recipient.uuid,
                email=recipient.email,
                access_token=minted.token,
                expires_at=minted.expires_at,
            )
        )
        notify(
            db,
            "invitation",
            envelope,
            recipient,
            access_token=minted.token,
            awaiting_turn=recipient not in activated,
            routing_order=recipient.routing_order,
        )

    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.envelope_sent,
        {
            "document_count": len(documents),
            "recipient_count": len(recipients),
            "activated": [str(r.uuid) for r in activated],
        },
        actor=Actor.user(sender.id),
        ctx=ctx,
        created_at=now,
    )
    defer_task(db, "run_workflows", envelope.id, WorkflowTrigger.on_send.value, {"recipient_count": len(recipients)})
    logger.info("Envelope %s sent to %d recipients", envelope.uuid, len(tokens))
    return envelope, tokens


async def void_envelope(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    reason: str,
    ctx: Optional[RequestContext] = None,
) -> Envelope:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    if envelope.status not in (EnvelopeStatus.draft, *ACTIVE_STATUSES):
        raise InvalidState(f"cannot void a {envelope.status.value} envelope")

    now = utcnow()
    transition(envelope, EnvelopeStatus.voided)
    envelope.voided_at = now
    envelope.void_reason = reason
    envelope.next_reminder_at = None
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.envelope_voided,
        {"reason": reason},
        actor=Actor.user(sender.id),
        ctx=ctx,
        created_at=now,
    )
    defer_task(db, "run_workflows", envelope.id, WorkflowTrigger.on_void.value, {"reason": reason})
    return envelope


async def complete_envelope(
    db: AsyncSession,
    envelope: Envelope,
    ctx: Optional[RequestContext] = None,
    actor: Optional[Actor] = None,
) -> Envelope:
    """Called by the signing controller once no required signer remains."""
    now = utcnow()
    transition(envelope, EnvelopeStatus.completed)
    envelope.completed_at = now
    envelope.next_reminder_at = None
    await flush(db)
    await append_event(
        db,
        envelope.id,
        AuditEventType.envelope_completed,
        {"completed_at": now},
        actor=actor or Actor.system(),
        ctx=ctx,
        created_at=now,
    )
    defer_task(db, "build_certificate", envelope.id)
    defer_task(db, "run_workflows", envelope.id, WorkflowTrigger.on_complete.value, {})
    logger.info("Envelope %s completed", envelope.uuid)
    return envelope


async def get_progress(db: AsyncSession, envelope: Envelope) -> ProgressResponse:
    recipients = await load_recipients(db, envelope.id)
    fields = await load_fields(db, envelope.id)
    return compute_progress(recipients, fields)


async def get_audit_trail(db: AsyncSession, envelope: Envelope) -> list[AuditEvent]:
    return await list_events(db, envelope.id)


async def verify_envelope_chain(db: AsyncSession, envelope: Envelope):
    return await verify_chain(db, envelope.id)


async def reissue_access_token(
    db: AsyncSession,
    sender: Sender,
    envelope_uuid: uuid.UUID,
    recipient_uuid: uuid.UUID,
) -> IssuedToken:
    """Mint a fresh link for a recipient; the previous token stops matching immediately."""
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    if envelope.status not in ACTIVE_STATUSES:
        raise InvalidState(f"cannot reissue access on a {envelope.status.value} envelope")
    recipient = await _get_recipient(db, envelope, recipient_uuid)
    if recipient.role not in ACTING_ROLES:
        raise ValidationError("viewers do not receive access links")
    if recipient.status not in OPEN_RECIPIENT_STATUSES and recipient.status != RecipientStatus.declined:
        raise InvalidState("recipient has already signed")

    minted = mint_access_token(recipient, settings.access_token_bytes, settings.access_token_ttl_days)
    await flush(db)
    notify(db, "invitation", envelope, recipient, access_token=minted.token)
    logger.info("Reissued access token for recipient %s on envelope %s", recipient.uuid, envelope.uuid)
    return IssuedToken(
        recipient_id=recipient.uuid, email=recipient.email, access_token=minted.token, expires_at=minted.expires_at
    )


# ── Workflows ──────────────────────────────────────────────────────────────────


async def add_workflow(
    db: AsyncSession, sender: Sender, envelope_uuid: uuid.UUID, data: WorkflowCreate
) -> EnvelopeWorkflow:
    envelope = await get_owned_envelope(db, sender.id, envelope_uuid, for_update=True)
    require_draft(envelope)
    workflow = EnvelopeWorkflow(
        envelope_id=envelope.id,
        name=data.name,
        trigger=data.trigger,
        conditions=[c.model_dump(mode="json") for c in data.conditions],
        actions=[a.model_dump(mode="json") for a in data.actions],
        is_active=data.is_active,
    )
    db.add(workflow)
    await flush(db)
    return workflow


async def list_workflows(db: AsyncSession, envelope: Envelope) -> list[EnvelopeWorkflow]:
    return await load_workflows(db, envelope.id)
