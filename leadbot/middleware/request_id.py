# leadbot/middleware/request_id.py
from __future__ import annotations

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from leadbot.core.logging import set_request_id

REQUEST_ID_HEADER = "X-Request-ID"


def resolve_request_id(request: Request) -> str:
    """Reuse an upstream id when one is supplied, otherwise mint one."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or request.headers.get("X-Correlation-ID")
    if request_id:
        return request_id[:128]

    # W3C trace context: 00-<32 hex trace id>-<span id>-<flags>
    traceparent = request.headers.get("traceparent")
    if traceparent and traceparent.startswith("00-") and len(traceparent) >= 35:
        return traceparent[3:35]

    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the log context and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        set_request_id(None)
        request_id = resolve_request_id(request)
        request.state.request_id = request_id
        set_request_id(request_id)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
