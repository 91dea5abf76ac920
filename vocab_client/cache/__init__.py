"""
Read caching with TTL expiry and request coalescing.
"""
from .core import CacheEntry, RequestKey, request_key
from .coalescer import RequestCoalescer
from .manager import ResponseCache

__all__ = [
    # Core types
    "CacheEntry",
    "RequestKey",
    "request_key",
    # Coalescing
    "RequestCoalescer",
    # Cache
    "ResponseCache",
]
