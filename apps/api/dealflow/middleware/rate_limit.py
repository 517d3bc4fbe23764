from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealflow.context import get_correlation_id
from dealflow.core.config import get_settings


RATE_LIMITED_PREFIX = "/api/automations"


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    """Per (user, route group) token buckets refilled continuously over a window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, key: tuple[str, str], capacity: int, window_seconds: int = 60) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        per_second = capacity / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), updated_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.updated_at) * per_second)
            bucket.updated_at = now
            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / per_second))
            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


class AutomationMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith(RATE_LIMITED_PREFIX)
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            (_resolve_user_id(request), _resolve_route_group(path)),
            capacity=settings.rate_limit_mutations_per_minute,
        )
        if allowed:
            return await call_next(request)

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


def _resolve_route_group(path: str) -> str:
    # /api/automations/events is rate limited apart from workflow authoring.
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 3 and parts[2] == "events":
        return "events"
    return "workflows"


def _resolve_user_id(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return "anonymous"

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"
    subject = payload.get("sub")
    return str(subject) if subject is not None else "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
