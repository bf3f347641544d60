"""
experiment_sdk.tier3_platform.bucketing
────────────────────────────────────────
Deterministic user bucketing. A (user_id, experiment_id) pair always maps
to the same integer bucket in [0, 100), across calls, processes and
deployments, so a user keeps seeing the same variant.

The hash input, digest and slice are fixed forever: changing any of them
reshuffles every live experiment.
"""
from __future__ import annotations

import hashlib

BUCKET_COUNT = 100


def bucket(user_id: str, experiment_id: str) -> int:
    """
    MD5 of ``"{user_id}:{experiment_id}"``; the first 8 hex characters are
    read as an unsigned 32-bit integer and reduced modulo 100.
    """
    digest = hashlib.md5(
        f"{user_id}:{experiment_id}".encode("utf-8"), usedforsecurity=False
    ).hexdigest()
    return int(digest[:8], 16) % BUCKET_COUNT


__all__ = ["BUCKET_COUNT", "bucket"]
