from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id
from app.core.context import RequestContext, resolve_route_scope

CORRELATION_HEADER = "x-correlation-id"
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def resolve_correlation_id(raw: str | None) -> str:
    """Accept a caller-supplied id only if it is short and header-safe; otherwise mint a UUID4."""
    if raw and _CORRELATION_ID_RE.match(raw):
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        route_group, entity_type = resolve_route_scope(request.url.path)
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(
            correlation_id=correlation_id,
            route_group=route_group,
            entity_type=entity_type,
        )

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if entity_type:
                span.set_attribute("entity_type", entity_type)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
