import uuid
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from countersign.blobs.base import BlobStore
from countersign.blobs.factory import create_blob_store
from countersign.common.context import RequestContext
from countersign.common.identity import Sender
from countersign.config import settings
from countersign.database import get_session_factory
from countersign.signing.controller import SigningController
from countersign.signing.providers import SigningProvider, get_provider

security = HTTPBearer()


async def get_current_sender(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Sender:
    """Sender asserted by a bearer token from the identity module."""
    try:
        payload = jwt.decode(
            credentials.credentials, settings.identity_secret_key, algorithms=[settings.identity_jwt_algorithm]
        )
        sender_id = payload.get("sub")
        token_type = payload.get("type")
        email = payload.get("email")
        if sender_id is None or token_type != "access" or not email:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        return Sender(id=uuid.UUID(sender_id), email=email, name=payload.get("name"))
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = RequestContext.with_timeout(
            settings.request_timeout_seconds,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    return ctx


@lru_cache
def get_blob_store() -> BlobStore:
    return create_blob_store(settings)


@lru_cache
def get_signing_provider() -> SigningProvider:
    return get_provider(settings)


@lru_cache
def get_signing_controller() -> SigningController:
    return SigningController(
        get_session_factory(),
        get_blob_store(),
        get_signing_provider(),
        settings=settings,
    )
