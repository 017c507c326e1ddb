"""
Cache key builders.

Every key that depends on a user lives under ``user:{user_id}:`` so a single
pattern invalidates the user's whole namespace (mutation of their
collection, profile recompute, purge).

Ids are copied into keys as-is. Patterns escape them first, so an id holding
glob characters only ever matches its own keys.
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterable

# Bracket form is read the same way by fnmatch and by Redis MATCH.
_GLOB_ESCAPES = {"*": "[*]", "?": "[?]", "[": "[[]", "\\": "[\\\\]"}


def glob_escape(segment: str) -> str:
    return "".join(_GLOB_ESCAPES.get(ch, ch) for ch in segment)


def user_namespace(user_id: str) -> str:
    return f"user:{glob_escape(user_id)}:*"


def profile_key(user_id: str) -> str:
    return f"user:{user_id}:profile"


def recommendations_pattern(user_id: str) -> str:
    return f"user:{glob_escape(user_id)}:reco:*"


def all_recommendations_pattern() -> str:
    """Every user's cached recommendations, degraded entries included."""
    return "user:*:reco:*"


def filter_hash(exclude_ids: Iterable[str], include_own: bool = False) -> str:
    """Stable short hash of the request filters (order-insensitive)."""
    payload = json.dumps(
        {"exclude": sorted(set(exclude_ids)), "own": bool(include_own)},
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def recommendations_key(user_id: str, count: int, fhash: str) -> str:
    return f"user:{user_id}:reco:{count}:{fhash}"


def recipe_namespace(recipe_id: str) -> str:
    return f"recipe:{glob_escape(recipe_id)}:*"


def embedding_key(recipe_id: str) -> str:
    return f"recipe:{recipe_id}:embedding"


def search_key(query: str) -> str:
    digest = hashlib.sha256(query.strip().lower().encode()).hexdigest()[:24]
    return f"search:{digest}"


def degraded_recommendations_key(user_id: str, count: int, fhash: str) -> str:
    return f"user:{user_id}:reco:{count}:{fhash}:degraded"
