"""Response cache, request fingerprints and the JSON file store."""

from grade_router.cache.file_store import JsonFileCacheStore
from grade_router.cache.fingerprint import fingerprint, normalize_text
from grade_router.cache.response_cache import CacheStats, ResponseCache

__all__ = ["CacheStats", "JsonFileCacheStore", "ResponseCache", "fingerprint", "normalize_text"]
