from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import subject_from_request
from app.core.config import Settings, get_settings
from app.core.context import get_request_context


logger = logging.getLogger("app.request")

_WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per ``(subject, route group)`` token buckets refilled continuously over the window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, subject: str, route_group: str, capacity: int, window_seconds: int = _WINDOW_SECONDS) -> int:
        """Consume one token; returns 0 when allowed, otherwise the seconds until a token is available."""
        if capacity <= 0:
            return window_seconds

        now = time.monotonic()
        per_second = capacity / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((subject, route_group), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def _capacity_for(route_group: str, settings: Settings) -> int:
    # CSV imports rewrite many rows per request and get their own, smaller allowance
    if route_group.startswith("import."):
        return settings.rate_limit_crm_imports_per_minute
    return settings.rate_limit_crm_mutations_per_minute


def _rate_limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_seconds": retry_after},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        context = get_request_context(request)
        if context.route_group is None:
            return await call_next(request)

        retry_after = _limiter.take(
            subject_from_request(request),
            context.route_group,
            _capacity_for(context.route_group, settings),
        )
        if not retry_after:
            return await call_next(request)

        logger.warning(
            "http.rate_limited",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": 429,
                "entity_type": context.entity_type,
                "operation": context.route_group,
            },
        )
        return _rate_limited_response(request, retry_after)


def reset_rate_limiter() -> None:
    _limiter.clear()
