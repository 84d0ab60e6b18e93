"""Deterministic bucketing of subjects into [0, 100).

The same (subject, salt) pair always lands in the same bucket, across
processes and restarts. No run-time random state is involved.
"""

import hashlib

from .models import Variant

BUCKET_COUNT = 100


def make_salt(experiment_id: str, purpose: str) -> str:
    """Salt for one bucketing purpose (e.g. traffic vs variant) of an experiment."""
    return f"{experiment_id}:{purpose}"


def bucket(subject_id: str, salt: str) -> int:
    """Map a subject to an integer bucket in [0, 100)."""
    key = f"{subject_id}:{salt}".encode("utf-8")
    digest = hashlib.sha256(key).hexdigest()
    return int(digest[:8], 16) % BUCKET_COUNT


def select_variant(variants: list[Variant], bucket_value: float) -> Variant | None:
    """Walk cumulative weights; the first variant whose running total exceeds
    the bucket wins. Falls back to the control when rounding leaves a gap."""
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight
        if bucket_value < cumulative:
            return variant
    return next((v for v in variants if v.is_control), None)
