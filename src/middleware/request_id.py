"""Request ID tracing middleware: adds X-Request-ID to every response."""
from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Read by the logging filter so every log line carries the request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request/response for tracing.

    A client-supplied X-Request-ID is honored when it is short and log-safe;
    otherwise a UUID4 is generated. Payment webhooks and callbacks arrive from
    the provider without one, so reconciliation logs get a fresh ID per delivery.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        incoming = request.headers.get("x-request-id", "")
        rid = incoming if _VALID_ID.match(incoming) else str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
