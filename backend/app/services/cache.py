"""
Caching Service.

Simple memory-based cache for heavy read-side aggregations (heatmaps).
Entries are per process and expire after their TTL.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, Optional

# In-memory store, keyed by query fingerprint
_cache_store: Dict[str, dict] = {}


class CacheService:

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        entry = _cache_store.get(key)
        if not entry:
            return None

        if datetime.utcnow() > entry["expires_at"]:
            del _cache_store[key]
            return None

        return entry["data"]

    @staticmethod
    async def set(key: str, data: Any, ttl_seconds: int = 300):
        if ttl_seconds <= 0:
            return
        _cache_store[key] = {
            "data": data,
            "expires_at": datetime.utcnow() + timedelta(seconds=ttl_seconds)
        }

    @staticmethod
    async def clear():
        _cache_store.clear()
