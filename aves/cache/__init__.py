"""
Generation cache: content-addressed, single-flight storage of generated exercises.
"""

from .generation_cache import CacheResult, CacheStats, GenerationCache
from .keys import build_cache_key, exercise_cache_key
from .schemas import ExerciseValidator, parse_exercise, validate_exercise_payload
from .store import CacheEntry, CacheStore, InMemoryCacheStore, SqlCacheStore

__all__ = [
    "CacheEntry",
    "CacheResult",
    "CacheStats",
    "CacheStore",
    "ExerciseValidator",
    "GenerationCache",
    "InMemoryCacheStore",
    "SqlCacheStore",
    "build_cache_key",
    "exercise_cache_key",
    "parse_exercise",
    "validate_exercise_payload",
]
