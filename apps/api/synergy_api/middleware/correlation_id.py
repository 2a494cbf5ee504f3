from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from synergy_api.context import reset_correlation_id, set_correlation_id

_ACCEPTED_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(header_value: str | None) -> str:
    if header_value and _ACCEPTED_CORRELATION_ID.match(header_value):
        return header_value
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
