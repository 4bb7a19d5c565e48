import uuid
from typing import Annotated

from fastapi import APIRouter, Depends

from countersign.common.context import RequestContext
from countersign.dependencies import get_request_context, get_signing_controller
from countersign.signing.controller import SigningController
from countersign.signing.schemas import DeclineRequest, DeclineResponse, RecipientView, SignRequest, SignResponse

router = APIRouter()


# ── Public signing routes (authorised by the access token only) ───────────────


@router.get("/{envelope_id}/{access_token}", response_model=RecipientView)
async def view_envelope(
    envelope_id: uuid.UUID,
    access_token: str,
    controller: Annotated[SigningController, Depends(get_signing_controller)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    return await controller.view(envelope_id, access_token, ctx)


@router.post("/{envelope_id}/{access_token}", response_model=SignResponse)
async def sign(
    envelope_id: uuid.UUID,
    access_token: str,
    controller: Annotated[SigningController, Depends(get_signing_controller)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
    body: SignRequest = SignRequest(),
):
    return await controller.sign(envelope_id, access_token, body, ctx)


@router.post("/{envelope_id}/{access_token}/decline", response_model=DeclineResponse)
async def decline(
    envelope_id: uuid.UUID,
    access_token: str,
    body: DeclineRequest,
    controller: Annotated[SigningController, Depends(get_signing_controller)],
    ctx: Annotated[RequestContext, Depends(get_request_context)],
):
    return await controller.decline(envelope_id, access_token, body.reason, ctx)
