"""
Unit tests for variant assignment.
"""

import pytest

from config import Settings
from funnel.core.models import SourceType, VariantAssignment
from funnel.variants.assignment import (
    DEFAULT_BUCKETS,
    VariantAssigner,
    hash_bucket,
    parse_buckets,
    tier_order,
)


class StaticOverrides:
    def __init__(self, overrides=None):
        self.overrides = overrides or {}

    def get_override(self, guide_hash):
        return self.overrides.get(guide_hash)


class TestVariantAssigner:
    """Tests for VariantAssigner."""

    def test_stable_for_same_pair(self):
        assigner = VariantAssigner()

        assert assigner.assign("learner-1", "guide-1") == assigner.assign("learner-1", "guide-1")
        assert VariantAssigner().assign("learner-1", "guide-1") == assigner.assign("learner-1", "guide-1")

    def test_anonymous_hashes_as_anon(self):
        assert hash_bucket(None, "guide-1", 7) == hash_bucket("anon", "guide-1", 7)
        assert hash_bucket("", "guide-1", 7) == hash_bucket("anon", "guide-1", 7)

    def test_both_buckets_reachable(self):
        assigner = VariantAssigner()

        variants = {assigner.assign(f"learner-{i}", "guide-1") for i in range(64)}

        assert variants == set(DEFAULT_BUCKETS)

    def test_override_wins(self):
        assigner = VariantAssigner(StaticOverrides({"guide-1": VariantAssignment.SPLIT}))

        assert assigner.assign("learner-1", "guide-1") == VariantAssignment.SPLIT
        assert assigner.assign("learner-1", "guide-2") in DEFAULT_BUCKETS

    def test_override_from_local_store(self, local_store):
        local_store.set_override("guide-1", VariantAssignment.BANK_FIRST)
        assigner = VariantAssigner(local_store)

        assert all(assigner.assign(f"learner-{i}", "guide-1") == VariantAssignment.BANK_FIRST for i in range(10))

    def test_buckets_from_settings(self):
        assigner = VariantAssigner.from_settings(Settings(variant_buckets="split"))

        assert assigner.assign("learner-1", "guide-1") == VariantAssignment.SPLIT

    def test_no_buckets_rejected(self):
        with pytest.raises(ValueError):
            VariantAssigner(buckets=())


class TestParseBuckets:
    def test_unknown_names_dropped(self):
        assert parse_buckets(["bank_first", "nonsense", " SPLIT "]) == (
            VariantAssignment.BANK_FIRST,
            VariantAssignment.SPLIT,
        )

    def test_empty_falls_back_to_default(self):
        assert parse_buckets(["nonsense"]) == DEFAULT_BUCKETS


class TestTierOrder:
    """Tests for tier_order."""

    def test_verified_first(self):
        assert tier_order(VariantAssignment.VERIFIED_FIRST) == (
            SourceType.VERIFIED, SourceType.BANK, SourceType.GENERATED,
        )

    def test_bank_first(self):
        assert tier_order(VariantAssignment.BANK_FIRST)[0] == SourceType.BANK

    def test_split_alternates(self):
        orders = [tier_order(VariantAssignment.SPLIT, i)[0] for i in range(4)]

        assert orders == [SourceType.VERIFIED, SourceType.BANK, SourceType.VERIFIED, SourceType.BANK]

    def test_generation_always_last(self):
        for variant in [None, *VariantAssignment]:
            for slot in range(3):
                assert tier_order(variant, slot)[-1] == SourceType.GENERATED
