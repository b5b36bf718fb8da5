from __future__ import annotations

import logging
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

from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.request")

WINDOW_SECONDS = 60
PIPELINE_ADMIN_GROUP = "pipeline-stages"


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class MutationBudget:
    """Per (user, route group) token bucket refilled continuously over one window."""

    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def consume(self, user_id: str, route_group: str, capacity: int) -> RateDecision:
        if capacity <= 0:
            return RateDecision(allowed=False, retry_after=self.window_seconds)

        now = time.monotonic()
        per_second = capacity / float(self.window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((user_id, route_group), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now
            if bucket.tokens < 1.0:
                return RateDecision(allowed=False, retry_after=max(1, math.ceil((1.0 - bucket.tokens) / per_second)))
            bucket.tokens -= 1.0
            return RateDecision(allowed=True)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_budget = MutationBudget()


def capacity_for(route_group: str, settings: Settings) -> int:
    # Stage administration may get its own budget; otherwise it shares the mutation budget.
    if route_group == PIPELINE_ADMIN_GROUP and settings.rate_limit_pipeline_admin_per_minute is not None:
        return settings.rate_limit_pipeline_admin_per_minute
    return settings.rate_limit_crm_mutations_per_minute


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/api/crm")
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        route_group = _resolve_route_group(path)
        user_id = _resolve_user_id(request, settings)
        decision = _budget.consume(user_id, route_group, capacity_for(route_group, settings))
        if decision.allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        observe_rate_limited(route_group)
        logger.warning(
            "http.rate_limited",
            extra={"method": request.method, "path": path, "status_code": 429, "actor_user_id": user_id},
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"route_group": route_group, "retry_after": decision.retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(decision.retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    # /api/crm/<group>/...
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) >= 3 else "crm"


def _resolve_user_id(request: Request, settings: Settings) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return "anonymous"
    try:
        claims: dict[str, Any] = jwt.decode(
            auth_header.removeprefix("Bearer "),
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return "anonymous"
    subject = claims.get("sub")
    return "anonymous" if subject is None else str(subject)


def reset_rate_limiter() -> None:
    _budget.clear()
