"""Deterministic user bucketing.

The bucket function is pinned so that every platform (and any server-side
pre-computation) agrees on it: MD5 of the UTF-8 identity, the first 8 hex
digits read as an unsigned 32-bit integer, modulo 100.
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

ANONYMOUS_IDENTITY = "anonymous"
BUCKET_COUNT = 100


def bucket(identity: Optional[str]) -> int:
    """Map an identity to a stable bucket in [0, 100).

    Missing identities share the single ``"anonymous"`` bucket.
    """
    key = identity or ANONYMOUS_IDENTITY
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()  # nosec B324 - stable rollout hashing
    return int(digest[:8], 16) % BUCKET_COUNT


def in_rollout(identity: Optional[str], percentage: int) -> bool:
    """Check whether an identity falls inside a rollout percentage."""
    if percentage >= 100:
        return True
    return bucket(identity) < percentage


def select_variant(allocation: Mapping[str, int], identity: Optional[str]) -> Optional[str]:
    """Pick a variant from a traffic allocation.

    Variants are walked in name order and cut points accumulate; returns
    None when the bucket lies past the allocated total (not in test).
    """
    user_bucket = bucket(identity)
    cumulative = 0
    for variant in sorted(allocation):
        share = allocation[variant]
        if share <= 0:
            continue
        cumulative += share
        if user_bucket < cumulative:
            return variant
    return None
