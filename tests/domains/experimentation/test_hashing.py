"""Tests for deterministic hash bucketing and the weight walk."""

import hashlib
from collections import Counter

from src.domains.experimentation.hashing import BUCKET_COUNT, bucket, make_salt, select_variant
from src.domains.experimentation.models import Variant


def _variants(*weights: float) -> list[Variant]:
    return [
        Variant(variant_id=f"v{i}", weight=w, is_control=i == 0) for i, w in enumerate(weights)
    ]


class TestBucket:
    def test_consistent_bucket(self):
        """Same subject + salt → same bucket every time."""
        salt = make_salt("exp-001", "variant")
        assert bucket("user-123", salt) == bucket("user-123", salt)

    def test_matches_sha256_prefix(self):
        salt = make_salt("exp-001", "traffic")
        digest = hashlib.sha256(f"user-42:{salt}".encode()).hexdigest()
        assert bucket("user-42", salt) == int(digest[:8], 16) % 100

    def test_range(self):
        salt = make_salt("exp-range", "variant")
        values = {bucket(f"user-{i}", salt) for i in range(5000)}
        assert min(values) >= 0
        assert max(values) < BUCKET_COUNT
        # 5000 subjects should reach every bucket
        assert len(values) == BUCKET_COUNT

    def test_salt_format(self):
        assert make_salt("exp-9", "traffic") == "exp-9:traffic"

    def test_purposes_are_independent(self):
        """Traffic and variant buckets for one experiment are not the same draw."""
        traffic = make_salt("exp-ind", "traffic")
        variant = make_salt("exp-ind", "variant")
        same = sum(
            1 for i in range(1000) if bucket(f"user-{i}", traffic) == bucket(f"user-{i}", variant)
        )
        # Independent draws coincide about 1% of the time
        assert same < 50

    def test_different_experiments_differ(self):
        buckets = {bucket("user-1", make_salt(f"exp-{i}", "variant")) for i in range(50)}
        assert len(buckets) > 10


class TestSelectVariant:
    def test_walks_cumulative_weights(self):
        variants = _variants(50, 30, 20)
        assert select_variant(variants, 0).variant_id == "v0"
        assert select_variant(variants, 49).variant_id == "v0"
        assert select_variant(variants, 50).variant_id == "v1"
        assert select_variant(variants, 79).variant_id == "v1"
        assert select_variant(variants, 80).variant_id == "v2"
        assert select_variant(variants, 99).variant_id == "v2"

    def test_exact_partition_over_integer_buckets(self):
        variants = _variants(50, 30, 20)
        counts = Counter(select_variant(variants, b).variant_id for b in range(BUCKET_COUNT))
        assert counts == {"v0": 50, "v1": 30, "v2": 20}

    def test_zero_weight_variant_never_selected(self):
        variants = _variants(60, 0, 40)
        chosen = {select_variant(variants, b).variant_id for b in range(BUCKET_COUNT)}
        assert "v1" not in chosen

    def test_gap_falls_back_to_control(self):
        variants = [
            Variant(variant_id="treatment", weight=49.5),
            Variant(variant_id="control", weight=49.5, is_control=True),
        ]
        assert select_variant(variants, 99.5).variant_id == "control"

    def test_partition_100k_subjects(self):
        """Large-sample allocation matches weights within ±1%."""
        variants = _variants(50, 30, 20)
        salt = make_salt("exp-partition", "variant")
        n = 100_000
        counts = Counter(
            select_variant(variants, bucket(f"subject-{i}", salt)).variant_id for i in range(n)
        )
        for variant in variants:
            share = counts[variant.variant_id] / n
            assert abs(share - variant.weight / 100) < 0.01, counts
