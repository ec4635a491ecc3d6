"""
TTL cache and fetch coalescing.
"""
from .store import CacheEntry, CacheStore
from .gate import FetchGate

__all__ = [
    "CacheEntry",
    "CacheStore",
    "FetchGate",
]
