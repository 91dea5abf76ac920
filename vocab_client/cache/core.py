"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Tuple

# (HTTP method, endpoint path), shared by the read cache and the coalescer
RequestKey = Tuple[str, str]


def request_key(method: str, endpoint: str) -> RequestKey:
    return (method.upper(), endpoint)


@dataclass
class CacheEntry:
    """
    A cached response body.

    Timestamps come from the owning cache's clock (monotonic seconds).
    """
    data: Any
    stored_at: float
    ttl_seconds: float

    def age_seconds(self, now: float) -> float:
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        """Check if data is within its TTL."""
        return self.age_seconds(now) < self.ttl_seconds
