import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.common.context import RequestContext
from countersign.common.identity import Sender
from countersign.common.pagination import PaginatedResponse
from countersign.database import get_db
from countersign.dependencies import get_current_sender, get_request_context
from countersign.envelopes.schemas import EnvelopeResponse
from countersign.envelopes.service import envelope_view
from countersign.templates.schemas import EnvelopeFromTemplate, TemplateCreate, TemplateResponse
from countersign.templates.service import (
    create_envelope_from_template,
    create_template,
    delete_template,
    get_owned_template,
    list_templates,
    template_response,
    template_summary,
)

router = APIRouter()


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create(
    data: TemplateCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    template = await create_template(db, sender, data)
    return template_response(template)


@router.get("", response_model=PaginatedResponse)
async def list_all(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    limit: int = 25,
    offset: int = 0,
):
    limit = max(1, min(limit, 100))
    offset = max(0, offset)
    templates, total = await list_templates(db, sender.id, limit, offset)
    items = [template_summary(t).model_dump(mode="json") for t in templates]
    return PaginatedResponse.create(items=items, total=total, limit=limit, offset=offset)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_detail(
    template_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    return template_response(await get_owned_template(db, sender.id, template_id))


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(
    template_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
):
    await delete_template(db, sender, template_id)


@router.post("/{template_id}/envelopes", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def create_envelope(
    template_id: uuid.UUID,
    data: EnvelopeFromTemplate,
    db: Annotated[AsyncSession, Depends(get_db)],
    sender: Annotated[Sender, Depends(get_current_sender)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    envelope = await create_envelope_from_template(db, sender, template_id, data, ctx)
    return await envelope_view(db, envelope)
