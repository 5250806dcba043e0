"""Request context middleware for structured logging."""

import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def resolve_request_id(incoming: str | None) -> str:
    """Reuse a well-formed client request id, otherwise generate one."""
    if incoming and _REQUEST_ID_PATTERN.fullmatch(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request_id to structlog context vars for every request.

    An incoming X-Request-ID (e.g. from the mobile client's retry logic) is
    reused so a retried identification can be traced across attempts. Ids
    longer than 128 characters or outside [A-Za-z0-9._:-] are replaced.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
