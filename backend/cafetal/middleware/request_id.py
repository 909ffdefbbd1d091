"""Request ID middleware: the correlation id carried into audit entries."""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request/response.

    - If the caller (or the gateway) sends X-Request-ID, we honor it
    - Otherwise we generate a UUID4
    - The ID is stored on ``request.state.request_id`` for the context deps
    - Response always includes the X-Request-ID header
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
