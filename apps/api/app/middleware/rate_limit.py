from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import bearer_token, decode_subject
from app.core.config import Settings, get_settings


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    route_group: str
    setting_name: str
    window_seconds: int = 60

    def capacity(self, settings: Settings) -> int:
        return int(getattr(settings, self.setting_name))


REFRESH_RULE = RateLimitRule(route_group="principal_activity.refresh", setting_name="rate_limit_refresh_per_minute")

LIMITED_ROUTES: dict[tuple[str, str], RateLimitRule] = {
    ("POST", "/api/principal-activity/refresh"): REFRESH_RULE,
}


@dataclass(slots=True)
class _Bucket:
    tokens: float
    refilled_at: float

    def refill(self, now: float, capacity: int, per_second: float) -> None:
        elapsed = max(0.0, now - self.refilled_at)
        self.tokens = min(float(capacity), self.tokens + elapsed * per_second)
        self.refilled_at = now


class PerUserTokenBuckets:
    """One token bucket per (user, route group); a full bucket holds `capacity` requests per window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def acquire(self, user_id: str, rule: RateLimitRule, capacity: int) -> int:
        """Take one token. Returns 0 when allowed, otherwise the seconds to wait."""
        if capacity <= 0:
            return rule.window_seconds

        per_second = capacity / float(rule.window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault((user_id, rule.route_group), _Bucket(float(capacity), now))
            bucket.refill(now, capacity, per_second)
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_buckets = PerUserTokenBuckets()


def _too_many_requests(request: Request, retry_after: int) -> JSONResponse:
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
            "details": None,
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


class RefreshRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        rule = LIMITED_ROUTES.get((request.method.upper(), request.url.path.rstrip("/")))
        if rule is None:
            return await call_next(request)

        retry_after = _buckets.acquire(_resolve_user_id(request), rule, rule.capacity(settings))
        if retry_after:
            return _too_many_requests(request, retry_after)
        return await call_next(request)


def _resolve_user_id(request: Request) -> str:
    token = bearer_token(request)
    decoded = decode_subject(token) if token else None
    return decoded[0] if decoded is not None else "anonymous"


def reset_rate_limiter() -> None:
    _buckets.clear()
