# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting for auth endpoints (brute-force and spam protection)."""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request, Response

from novella_server.config import Settings, settings
from novella_server.exceptions import RateLimited
from novella_server.locks import KeyedLock

logger = logging.getLogger(__name__)

GENERAL = "general"
LOGIN = "login"


@dataclass
class RateWindowCounter:
    key: str
    window_start: float
    count: int
    limit: int
    window: float


@dataclass(frozen=True)
class Admission:
    """Outcome of one ledger call. Times are in seconds."""

    allowed: bool
    count: int
    limit: int
    reset_after: float
    retry_after: float = 0.0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def headers(self) -> dict[str, str]:
        """Standard RateLimit-* response headers (reset in whole seconds)."""
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(1, math.ceil(self.reset_after))),
        }


class AttemptLedger:
    """
    Fixed-window attempt counters keyed by an arbitrary string.

    Every call counts, including rejected ones, so a client that keeps
    hammering stays over the limit until the window ends.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, RateWindowCounter] = {}
        self._locks = KeyedLock()

    async def admit(self, key: str, limit: int, window: float) -> Admission:
        if limit < 1 or window <= 0:
            logger.warning("Rejecting %r: invalid rate limit (limit=%s, window=%s)", key, limit, window)
            return Admission(allowed=False, count=0, limit=max(limit, 0), reset_after=0.0)
        async with self._locks.hold(key):
            now = self._clock()
            counter = self._counters.get(key)
            if counter is None or now - counter.window_start >= window:
                counter = RateWindowCounter(key=key, window_start=now, count=1, limit=limit, window=window)
                self._counters[key] = counter
                return Admission(allowed=True, count=1, limit=limit, reset_after=window)
            counter.count += 1
            counter.limit = limit
            counter.window = window
            reset_after = counter.window_start + window - now
            if counter.count <= limit:
                return Admission(allowed=True, count=counter.count, limit=limit, reset_after=reset_after)
            return Admission(
                allowed=False,
                count=counter.count,
                limit=limit,
                reset_after=reset_after,
                retry_after=reset_after,
            )

    def prune(self) -> int:
        """Drop counters whose window has elapsed. Returns how many were removed."""
        now = self._clock()
        stale = [
            key for key, counter in self._counters.items()
            if now - counter.window_start >= counter.window
        ]
        for key in stale:
            del self._counters[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)


@dataclass(frozen=True)
class RatePolicy:
    limit: int
    window: float
    message: str

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"rate limit must be at least 1, got {self.limit}")
        if self.window <= 0:
            raise ValueError(f"rate window must be positive, got {self.window}")


def default_policies(settings: Settings) -> dict[str, RatePolicy]:
    """Lenient policy for code endpoints, strict one for credential endpoints."""
    return {
        GENERAL: RatePolicy(
            limit=settings.rate_limit_general_max,
            window=settings.rate_limit_general_window_seconds,
            message="Too many requests, please try again in 15 minutes",
        ),
        LOGIN: RatePolicy(
            limit=settings.rate_limit_login_max,
            window=settings.rate_limit_login_window_seconds,
            message="Too many login or registration attempts, please try again in 5 minutes",
        ),
    }


class RateLimiter:
    """Named policies applied per client key on top of one AttemptLedger."""

    def __init__(self, ledger: AttemptLedger, policies: dict[str, RatePolicy]) -> None:
        self.ledger = ledger
        self.policies = dict(policies)

    async def check(self, policy_name: str, key: str) -> Admission:
        """Record an attempt; raise RateLimited if the policy rejects it."""
        policy = self.policies[policy_name]
        admission = await self.ledger.admit(f"{policy_name}:{key}", policy.limit, policy.window)
        if not admission.allowed:
            logger.warning("Rate limit %s exceeded for %s", policy_name, key)
            raise RateLimited(policy.message, retry_after=admission.retry_after, limit=policy.limit)
        return admission


def client_key(request: Request, trust_forwarded_for: bool = False) -> str:
    """Socket peer address, or the first X-Forwarded-For hop when behind a trusted proxy."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def rate_limit_dep(policy_name: str):
    """
    FastAPI dependency enforcing a named policy before the endpoint runs.

    Add Depends(rate_limit_dep(LOGIN)) to routes. RateLimit-* headers go on
    the response and are kept on request.state so error responses carry
    them too.
    """

    async def dependency(request: Request, response: Response) -> Admission:
        limiter: RateLimiter = request.app.state.accounts.limiter
        key = client_key(request, settings.trust_forwarded_for)
        admission = await limiter.check(policy_name, key)
        request.state.rate_limit_headers = admission.headers
        response.headers.update(admission.headers)
        return admission

    return dependency
