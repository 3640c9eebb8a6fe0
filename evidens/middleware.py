"""Request context middleware for structured logging."""

import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request_id and path to structlog context vars for every request.

    A well-formed X-Request-ID sent by the caller (the frontend or the edge
    proxy) is reused so logs correlate across hops; otherwise a new one is
    generated. The ID is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if _VALID_REQUEST_ID.match(incoming) else str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        structlog.contextvars.clear_contextvars()
        return response
