from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import RateLimitedError
from intakegate.storage.models import AuditAction, RequestActor, Role, utcnow

logger = get_logger(__name__)

ANONYMOUS_CLASS = "anonymous"
AUTHENTICATED_CLASS = "authenticated"

_MAX_LOCAL_WINDOWS = 10000

# None means the role is never throttled
ROLE_CLASSES: Dict[Role, Optional[str]] = {
    Role.ANONYMOUS: ANONYMOUS_CLASS,
    Role.OWNER: AUTHENTICATED_CLASS,
    Role.COORDINATOR: AUTHENTICATED_CLASS,
    Role.ADMIN: AUTHENTICATED_CLASS,
    Role.SYSTEM: None,
}

if set(ROLE_CLASSES) != set(Role):
    raise RuntimeError("rate limit role classes must cover every role")


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    retry_after: int = 0


def window_position(now: datetime, window_seconds: int) -> Tuple[int, float]:
    """Return the current bucket number and seconds elapsed inside it."""
    ts = now.timestamp()
    bucket = int(ts // window_seconds)
    return bucket, ts - bucket * window_seconds


def estimate(current: int, previous: int, elapsed: float, window_seconds: int) -> float:
    return previous * (1.0 - elapsed / window_seconds) + current


def retry_after_seconds(
    current: int, previous: int, elapsed: float, window_seconds: int, limit: int
) -> int:
    """Seconds until one more request fits under ``limit``.

    While the current bucket still has room, the wait is however long the
    previous bucket's weight needs to decay. Otherwise the caller waits for
    the next bucket, where today's count becomes the decaying term.
    """
    w = float(window_seconds)
    if current + 1 <= limit and previous > 0:
        wait = w * (1.0 - (limit - current - 1) / previous) - elapsed
    else:
        wait = (w - elapsed) + (max(0.0, w * (1.0 - (limit - 1) / current)) if current else 0.0)
    return max(1, math.ceil(wait))


class RateLimiter:
    """Sliding-window counter keyed by (role class, caller identity, window bucket).

    Uses the Redis script when a cache is configured; otherwise counts in
    process under a lock. Only breaches are logged and audited.
    """

    def __init__(
        self,
        cache,
        audit: AuditService,
        *,
        window_seconds: int,
        limits: Dict[str, int],
    ) -> None:
        self.cache = cache
        self.audit = audit
        self.window_seconds = window_seconds
        self.limits = limits
        # identity key -> (bucket, count in bucket, count in previous bucket)
        self._local_windows: Dict[str, Tuple[int, int, int]] = {}
        self._local_lock = asyncio.Lock()

    @staticmethod
    def _identity_key(role_class: str, identity: str) -> str:
        digest = hashlib.sha256(identity.encode()).hexdigest()
        return f"ratelimit:{role_class}:{digest}"

    def limit_for(self, role: Role) -> Optional[int]:
        role_class = ROLE_CLASSES[role]
        return None if role_class is None else self.limits[role_class]

    async def _hit(
        self, identity_key: str, bucket: int, weight: float, limit: int
    ) -> Tuple[bool, int, int]:
        if self.cache:
            return await self.cache.sliding_window_hit(
                f"{identity_key}:{bucket}",
                f"{identity_key}:{bucket - 1}",
                previous_weight=weight,
                limit=limit,
                ttl_seconds=self.window_seconds * 2,
            )
        async with self._local_lock:
            seen_bucket, current, previous = self._local_windows.get(identity_key, (bucket, 0, 0))
            if seen_bucket != bucket:
                # Roll the window forward; a gap of more than one bucket forgets everything
                previous = current if seen_bucket == bucket - 1 else 0
                current = 0
            if previous * weight + current + 1 > limit:
                self._local_windows[identity_key] = (bucket, current, previous)
                return False, current, previous
            current += 1
            self._local_windows[identity_key] = (bucket, current, previous)
            if len(self._local_windows) > _MAX_LOCAL_WINDOWS:
                self._local_windows = {
                    k: v for k, v in self._local_windows.items() if v[0] >= bucket - 1
                }
            return True, current, previous

    async def check(
        self, role: Role, identity: str, *, now: Optional[datetime] = None
    ) -> Optional[RateLimitDecision]:
        """Count one request; ``None`` when the role is unbounded."""
        role_class = ROLE_CLASSES[role]
        if role_class is None:
            return None
        limit = self.limits[role_class]
        bucket, elapsed = window_position(now or utcnow(), self.window_seconds)
        weight = 1.0 - elapsed / self.window_seconds
        allowed, current, previous = await self._hit(
            self._identity_key(role_class, identity), bucket, weight, limit
        )
        used = estimate(current, previous, elapsed, self.window_seconds)
        reset_seconds = max(1, math.ceil(self.window_seconds - elapsed))
        if allowed:
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, math.floor(limit - used)),
                reset_seconds=reset_seconds,
            )
        return RateLimitDecision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_seconds=reset_seconds,
            retry_after=retry_after_seconds(current, previous, elapsed, self.window_seconds, limit),
        )

    async def enforce(
        self,
        role: Role,
        identity: str,
        *,
        actor: Optional[RequestActor] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RateLimitDecision]:
        decision = await self.check(role, identity, now=now)
        if decision is None or decision.allowed:
            return decision
        role_class = ROLE_CLASSES[role]
        logger.warning(
            "rate_limit_exceeded",
            role_class=role_class,
            identity=identity,
            limit=decision.limit,
            retry_after=decision.retry_after,
        )
        self.audit.record(
            AuditAction.RATE_LIMITED,
            session_id=session_id,
            resource="rate_limit",
            resource_id=role_class,
            details={
                "role_class": role_class,
                "identity": identity,
                "limit": decision.limit,
                "retry_after": decision.retry_after,
            },
            actor=actor,
        )
        raise RateLimitedError(
            retry_after=decision.retry_after,
            detail={"limit": decision.limit, "reset_seconds": decision.reset_seconds},
        )
