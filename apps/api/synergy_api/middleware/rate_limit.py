from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from synergy_api.context import get_correlation_id
from synergy_api.core.auth import resolve_caller
from synergy_api.core.config import get_settings

_WINDOW_SECONDS = 60


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            bucket = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / refill_rate))

            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/crm") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            user_id=_resolve_user_id(request),
            route_group=_resolve_route_group(path),
            capacity=settings.rate_limit_crm_mutations_per_minute,
            window_seconds=_WINDOW_SECONDS,
        )
        if allowed:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
        response = JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"retry_after": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def _resolve_route_group(path: str) -> str:
    # /api/crm/<group>/...
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    return parts[2]


def _resolve_user_id(request: Request) -> str:
    context = getattr(request.state, "context", None)
    if context is not None and context.user_id:
        return context.user_id
    return resolve_caller(request).sub


def reset_rate_limiter() -> None:
    _limiter.clear()
