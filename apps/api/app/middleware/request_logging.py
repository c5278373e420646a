from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import get_request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _request_fields(request: Request, status_code: int, duration_ms: float) -> dict[str, Any]:
    # the route template is only known once routing has run
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "entity_type": get_request_context(request).entity_type,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_request_fields(request, 500, _elapsed_ms(started)))
            raise

        fields = _request_fields(request, response.status_code, _elapsed_ms(started))
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=fields)
        return response
