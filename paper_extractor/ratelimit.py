"""Per-client admission control in front of the API routes.

One pyrate-limiter ``Limiter`` per policy, keyed by client address through a
bucket factory. Requests over the limit are rejected straight away with
HTTP 429; nothing waits.
"""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import Request
from pyrate_limiter import (
    AbstractBucket,
    BucketFactory,
    BucketFullException,
    Duration,
    InMemoryBucket,
    Limiter,
    Rate,
    RateItem,
    TimeClock,
)

logger = logging.getLogger(__name__)

GENERAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
INTERPRETATION_LIMIT_MESSAGE = "Too many AI interpretation requests from this IP, please try again after an hour."


class RateLimited(Exception):
    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class ClientBucketFactory(BucketFactory):
    """One in-memory bucket per client.

    Buckets are leaked inline, once per window, and dropped when empty, so
    no leaker thread is started and idle clients do not accumulate.
    """

    def __init__(self, rate: Rate, clock=None):
        self.rate = rate
        self.clock = clock or TimeClock()
        self.buckets: Dict[str, InMemoryBucket] = {}
        self._last_sweep = 0

    def wrap_item(self, name: str, weight: int = 1) -> RateItem:
        return RateItem(name, self.clock.now(), weight=weight)

    def get(self, item: RateItem) -> AbstractBucket:
        self._sweep(item.timestamp)
        bucket = self.buckets.get(item.name)
        if bucket is None:
            bucket = InMemoryBucket([self.rate])
            self.buckets[item.name] = bucket
        return bucket

    def _sweep(self, now: int) -> None:
        if now - self._last_sweep < self.rate.interval:
            return
        self._last_sweep = now
        for name, bucket in list(self.buckets.items()):
            bucket.leak(now)
            if not bucket.count():
                del self.buckets[name]


class ClientRateLimiter:
    def __init__(self, name: str, limit: int, window_seconds: int, message: str, clock=None):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self.buckets = ClientBucketFactory(Rate(limit, window_seconds * int(Duration.SECOND)), clock)
        self._limiter = Limiter(self.buckets, raise_when_fail=False)

    def allow(self, client: str) -> bool:
        try:
            return bool(self._limiter.try_acquire(client))
        except BucketFullException:
            return False

    def check(self, client: str) -> None:
        if not self.allow(client):
            logger.warning(f"Rate limited ({self.name}): {client} (>{self.limit} req/{self.window_seconds}s)")
            raise RateLimited(self.message, self.window_seconds)


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def general_limit(request: Request) -> None:
    request.app.state.general_limiter.check(client_address(request))


def interpretation_limit(request: Request) -> None:
    request.app.state.interpretation_limiter.check(client_address(request))
