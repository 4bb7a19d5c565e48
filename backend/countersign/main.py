import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from countersign.common.errors import HTTP_STATUS, CountersignError, ErrorCode, Internal
from countersign.config import settings
from countersign.dependencies import get_signing_provider
from countersign.documents.router import router as documents_router
from countersign.envelopes.router import router as envelopes_router
from countersign.middleware import CorrelationIDMiddleware
from countersign.signing.router import router as signing_router
from countersign.templates.router import router as templates_router

logger = logging.getLogger(__name__)

# Errors reported to callers only by code, never with their detail.
OPAQUE_ERRORS = frozenset({ErrorCode.integrity_error, ErrorCode.internal})


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_signing_provider.cache_info().currsize:
        await get_signing_provider().aclose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CountersignError)
async def countersign_error_handler(request: Request, exc: CountersignError):
    request_id = getattr(request.state, "correlation_id", None)
    if exc.code in OPAQUE_ERRORS:
        logger.error(
            "%s on %s %s (request %s): %s %r",
            exc.code.value,
            request.method,
            request.url.path,
            request_id,
            exc.message,
            exc.context,
        )
        body = Internal().to_dict()
        body["code"] = exc.code.value
    else:
        body = exc.to_dict()
    return JSONResponse(status_code=HTTP_STATUS[exc.code], content=body)


# Routers
app.include_router(documents_router, prefix="/api/documents", tags=["Documents"])
app.include_router(envelopes_router, prefix="/api/envelopes", tags=["Envelopes"])
app.include_router(signing_router, prefix="/api/sign", tags=["Signing"])
app.include_router(templates_router, prefix="/api/templates", tags=["Templates"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "version": settings.app_version}
