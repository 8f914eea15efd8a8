"""
rate_limit.py — Moving-window request throttling on `limits`.

One RateLimiter is built per process in main.py and reached through
`get_rate_limiter`. Windows live in the storage named by
RATE_LIMIT_STORAGE_URI: process memory by default, or a shared backend such
as redis:// when several workers serve the API. Expired entries are evicted
by the storage itself.
"""

import os
import math
import time
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Request
from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from errors import RateLimitedError

load_dotenv()

logger = logging.getLogger(__name__)

RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


DEFAULT_BUCKETS: Dict[str, str] = {
    "auth": "5 per minute",
    "upload": "10 per minute",
    "api": "60 per minute",
    "sensitive": "3 per minute",
    "download": "30 per minute",
    "anonymous": "20 per minute",
    # Keyed by (resource, caller); only failed attempts are recorded
    "password": "3 per 300 seconds",
    "two_factor": "5 per 300 seconds",
}

# Ceiling per target resource, shared by every caller
RESOURCE_CEILINGS: Dict[str, str] = {
    "password": "10 per 300 seconds",
    "two_factor": "10 per 300 seconds",
}


class RateLimiter:

    def __init__(
        self,
        buckets: Optional[Dict[str, str]] = None,
        ceilings: Optional[Dict[str, str]] = None,
        storage_uri: Optional[str] = None,
    ):
        self.buckets = {name: parse(limit) for name, limit in (buckets or DEFAULT_BUCKETS).items()}
        self.ceilings = {
            name: parse(limit)
            for name, limit in (RESOURCE_CEILINGS if ceilings is None else ceilings).items()
        }
        self.storage = storage_from_string(storage_uri or RATE_LIMIT_STORAGE_URI)
        self.strategy = MovingWindowRateLimiter(self.storage)

    def _item(self, name: str) -> RateLimitItem:
        try:
            return self.buckets[name]
        except KeyError:
            raise ValueError(f"Unknown rate limit bucket: {name}")

    def _retry_after(self, item: RateLimitItem, identifiers) -> int:
        stats = self.strategy.get_window_stats(item, *identifiers)
        return max(1, math.ceil(stats.reset_time - time.time()))

    def check(self, key: str, bucket: str, consume: bool = True) -> RateLimitResult:
        """Count one request against `bucket` for `key` unless the window is full."""
        item = self._item(bucket)
        identifiers = (bucket, key)
        if consume:
            allowed = self.strategy.hit(item, *identifiers)
        else:
            allowed = self.strategy.test(item, *identifiers)
        stats = self.strategy.get_window_stats(item, *identifiers)
        return RateLimitResult(
            allowed=allowed,
            limit=item.amount,
            remaining=max(0, stats.remaining),
            retry_after=0 if allowed else self._retry_after(item, identifiers),
        )

    def hit(self, key: str, bucket: str) -> RateLimitResult:
        result = self.check(key, bucket)
        if not result.allowed:
            logger.warning(f"Rate limit '{bucket}' exceeded for {key}")
            raise RateLimitedError(retry_after=result.retry_after, limit=result.limit)
        return result

    # ─── Per-resource budgets ────────────────────────────────────────────────

    def _resource_windows(self, resource_id: str, caller_key: str,
                          bucket: str) -> List[Tuple[RateLimitItem, tuple]]:
        windows = [(self._item(bucket), (bucket, resource_id, caller_key))]
        ceiling = self.ceilings.get(bucket)
        if ceiling is not None:
            windows.append((ceiling, (bucket, "resource", resource_id)))
        return windows

    def ensure_resource(self, resource_id: str, caller_key: str, bucket: str):
        """Raise if either the caller's or the resource's budget is spent. Records nothing."""
        for item, identifiers in self._resource_windows(resource_id, caller_key, bucket):
            if not self.strategy.test(item, *identifiers):
                logger.warning(f"Rate limit '{bucket}' exceeded for resource {resource_id}")
                raise RateLimitedError(retry_after=self._retry_after(item, identifiers), limit=item.amount)

    def record_resource(self, resource_id: str, caller_key: str, bucket: str):
        for item, identifiers in self._resource_windows(resource_id, caller_key, bucket):
            self.strategy.hit(item, *identifiers)

    def hit_resource(self, resource_id: str, caller_key: str, bucket: str):
        """Check and count one attempt against both the caller and the resource ceiling."""
        self.ensure_resource(resource_id, caller_key, bucket)
        self.record_resource(resource_id, caller_key, bucket)

    def reset(self):
        self.storage.reset()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "127.0.0.1"


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def rate_limited(bucket: str):
    """Route dependency: counts the request against `bucket` keyed by client IP."""
    def dependency(request: Request):
        get_rate_limiter(request).hit(client_ip(request), bucket)
    return dependency
