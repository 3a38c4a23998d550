"""
Content-addressable cache keys.

A key is a SHA-256 over the canonical JSON of the request semantics, so the
same request maps to the same key no matter who issues it or in which order
its list fields arrived.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

# List-valued fields whose order carries no meaning
UNORDERED_FIELDS = frozenset({"topics", "term_ids", "features", "tags"})


def _canonical(value: Any, field_name: str | None = None) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _canonical(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(v) for v in value]
        if field_name in UNORDERED_FIELDS or isinstance(value, (set, frozenset)):
            items.sort(key=lambda v: json.dumps(v, sort_keys=True, default=str))
        return items
    return value


def build_cache_key(
    descriptor: str,
    params: Mapping[str, Any] | None = None,
    model_version: str = "",
) -> str:
    """
    Build a deterministic key for a generation request.

    Args:
        descriptor: What is generated (e.g. exercise type)
        params: Semantic inputs of the request
        model_version: Model/prompt version; bumping it invalidates old keys

    Returns:
        Key of the form "<descriptor>:<sha256 hex>"
    """
    document = {
        "descriptor": descriptor,
        "params": _canonical(dict(params or {})),
        "model_version": model_version,
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{descriptor}:{digest}"


def exercise_cache_key(
    exercise_type: str,
    term_ids: Iterable[str],
    difficulty: int = 1,
    topics: Iterable[str] = (),
    model_version: str = "",
) -> str:
    """Cache key for an exercise over a set of terms."""
    return build_cache_key(
        exercise_type,
        {
            "term_ids": list(term_ids),
            "difficulty": difficulty,
            "topics": list(topics),
        },
        model_version=model_version,
    )
