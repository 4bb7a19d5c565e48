import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from countersign.common.context import RequestContext
from countersign.config import settings


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Tags the request with an id and attaches its RequestContext (deadline, ip, user agent)."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext.with_timeout(
            settings.request_timeout_seconds,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            request_id=correlation_id,
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response
