import logging
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.common.base_models import as_utc
from countersign.common.context import RequestContext
from countersign.common.errors import NotFound, ValidationError
from countersign.common.identity import Sender
from countersign.envelopes.models import Envelope
from countersign.envelopes.queries import get_owned_envelope, load_documents, load_fields, load_recipients
from countersign.envelopes.schemas import DocumentAttach, EnvelopeCreate, FieldCreate, RecipientCreate
from countersign.envelopes.service import add_field, add_recipient, attach_document, create_envelope
from countersign.store.transaction import flush, store_errors
from countersign.templates.models import EnvelopeTemplate
from countersign.templates.schemas import (
    EnvelopeFromTemplate,
    TemplateCreate,
    TemplateData,
    TemplateDocumentSlot,
    TemplateEnvelopeSettings,
    TemplateField,
    TemplateRecipientSlot,
    TemplateResponse,
    TemplateSummary,
)

logger = logging.getLogger(__name__)


def template_summary(template: EnvelopeTemplate) -> TemplateSummary:
    return TemplateSummary(
        id=template.uuid,
        name=template.name,
        description=template.description,
        source_envelope_id=template.source_envelope_id,
        usage_count=template.usage_count,
        created_at=as_utc(template.created_at),
        updated_at=as_utc(template.updated_at),
    )


def template_response(template: EnvelopeTemplate) -> TemplateResponse:
    return TemplateResponse(
        **template_summary(template).model_dump(),
        data=TemplateData.model_validate(template.template_data),
    )


async def get_owned_template(db: AsyncSession, owner_id: uuid.UUID, template_uuid: uuid.UUID) -> EnvelopeTemplate:
    async with store_errors():
        result = await db.execute(
            select(EnvelopeTemplate).where(EnvelopeTemplate.uuid == template_uuid, EnvelopeTemplate.owner_id == owner_id)
        )
    template = result.scalar_one_or_none()
    if template is None:
        raise NotFound("template not found")
    return template


async def snapshot_envelope(db: AsyncSession, envelope: Envelope) -> TemplateData:
    """The envelope's layout with recipients and documents replaced by positions."""
    documents = await load_documents(db, envelope.id)
    recipients = await load_recipients(db, envelope.id)
    document_index = {doc.id: index for index, (doc, _) in enumerate(documents)}
    recipient_index = {r.id: index for index, r in enumerate(recipients)}

    return TemplateData(
        envelope=TemplateEnvelopeSettings(
            title=envelope.title,
            subject=envelope.subject,
            message=envelope.message,
            priority=envelope.priority,
            reminder_frequency=envelope.reminder_frequency,
        ),
        documents=[
            TemplateDocumentSlot(order=order, filename=doc.filename, page_count=doc.page_count)
            for doc, order in documents
        ],
        recipients=[
            TemplateRecipientSlot(
                placeholder=f"Recipient {index + 1}",
                role=r.role,
                routing_order=r.routing_order,
                permissions=r.permissions or {},
                authentication_method=r.authentication_method,
                custom_message=r.custom_message,
                send_reminders=r.send_reminders,
            )
            for index, r in enumerate(recipients)
        ],
        fields=[
            TemplateField(
                document_index=document_index[f.document_id],
                recipient_index=recipient_index[f.recipient_id],
                type=f.field_type,
                page=f.page,
                x=f.x,
                y=f.y,
                width=f.width,
                height=f.height,
                name=f.name,
                required=f.required,
                properties=f.properties or {},
                default_value=f.default_value,
            )
            for f in await load_fields(db, envelope.id)
        ],
    )


async def create_template(db: AsyncSession, sender: Sender, data: TemplateCreate) -> EnvelopeTemplate:
    """Snapshot one of the sender's envelopes, in any status, as a template."""
    envelope = await get_owned_envelope(db, sender.id, data.envelope_id)
    snapshot = await snapshot_envelope(db, envelope)

    template = EnvelopeTemplate(
        owner_id=sender.id,
        name=data.name,
        description=data.description,
        source_envelope_id=envelope.uuid,
        template_data=snapshot.model_dump(mode="json"),
    )
    db.add(template)
    await flush(db)
    logger.info(
        "Template %s created from envelope %s (%d recipients, %d fields)",
        template.uuid,
        envelope.uuid,
        len(snapshot.recipients),
        len(snapshot.fields),
    )
    return template


async def list_templates(
    db: AsyncSession, owner_id: uuid.UUID, limit: int = 25, offset: int = 0
) -> tuple[list[EnvelopeTemplate], int]:
    async with store_errors():
        total = (
            await db.execute(select(func.count(EnvelopeTemplate.id)).where(EnvelopeTemplate.owner_id == owner_id))
        ).scalar_one()
        result = await db.execute(
            select(EnvelopeTemplate)
            .where(EnvelopeTemplate.owner_id == owner_id)
            .order_by(EnvelopeTemplate.id.desc())
            .offset(offset)
            .limit(limit)
        )
    return list(result.scalars().all()), total


async def delete_template(db: AsyncSession, sender: Sender, template_uuid: uuid.UUID) -> None:
    template = await get_owned_template(db, sender.id, template_uuid)
    await db.delete(template)
    await flush(db)


async def create_envelope_from_template(
    db: AsyncSession,
    sender: Sender,
    template_uuid: uuid.UUID,
    data: EnvelopeFromTemplate,
    ctx: Optional[RequestContext] = None,
) -> Envelope:
    """Build a draft from a template through the regular draft operations.

    ``recipients[i]`` fills recipient slot ``i`` and ``document_ids[i]``
    replaces template document ``i``; every step is audited as if the sender
    had made it by hand.
    """
    template = await get_owned_template(db, sender.id, template_uuid)
    snapshot = TemplateData.model_validate(template.template_data)

    if len(data.recipients) != len(snapshot.recipients):
        raise ValidationError(
            f"template has {len(snapshot.recipients)} recipient slots, {len(data.recipients)} recipients given"
        )
    if len(data.document_ids) < len(snapshot.documents):
        raise ValidationError(
            f"template needs {len(snapshot.documents)} documents, {len(data.document_ids)} given"
        )
    if len(set(data.document_ids)) != len(data.document_ids):
        raise ValidationError("each document can be used once")

    defaults = snapshot.envelope
    envelope = await create_envelope(
        db,
        sender,
        EnvelopeCreate(
            title=data.title or defaults.title,
            subject=data.subject if data.subject is not None else defaults.subject,
            message=data.message if data.message is not None else defaults.message,
            priority=defaults.priority,
            reminder_frequency=defaults.reminder_frequency,
            expires_at=data.expires_at,
            metadata={"template_id": str(template.uuid)},
        ),
        ctx,
    )

    for document_id in data.document_ids:
        await attach_document(db, sender, envelope.uuid, DocumentAttach(document_id=document_id), ctx)

    recipient_ids = []
    for slot, assignment in zip(snapshot.recipients, data.recipients):
        recipient = await add_recipient(
            db,
            sender,
            envelope.uuid,
            RecipientCreate(
                email=assignment.email,
                name=assignment.name,
                role=slot.role,
                routing_order=slot.routing_order,
                permissions=slot.permissions,
                authentication_method=slot.authentication_method,
                custom_message=assignment.custom_message or slot.custom_message,
                send_reminders=slot.send_reminders,
            ),
            ctx,
        )
        recipient_ids.append(recipient.uuid)

    for spec in snapshot.fields:
        await add_field(
            db,
            sender,
            envelope.uuid,
            FieldCreate(
                document_id=data.document_ids[spec.document_index],
                recipient_id=recipient_ids[spec.recipient_index],
                type=spec.type,
                page=spec.page,
                x=spec.x,
                y=spec.y,
                width=spec.width,
                height=spec.height,
                name=spec.name,
                required=spec.required,
                properties=spec.properties,
                default_value=spec.default_value,
            ),
            ctx,
        )

    template.usage_count = (template.usage_count or 0) + 1
    await flush(db)
    logger.info("Envelope %s created from template %s", envelope.uuid, template.uuid)
    return envelope
