"""
Variant Assignment: which item tier a learner sees first for a guide.

Assignment is a pure function of the opaque (learner id, guide hash) pair,
so every device computes the same variant without coordination. Operator
overrides, keyed by guide hash, win over the hash.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from typing import Protocol

from loguru import logger

from funnel.core.models import SourceType, VariantAssignment

ANONYMOUS_LEARNER = "anon"

DEFAULT_BUCKETS = (VariantAssignment.VERIFIED_FIRST, VariantAssignment.BANK_FIRST)

_VERIFIED_FIRST = (SourceType.VERIFIED, SourceType.BANK, SourceType.GENERATED)
_BANK_FIRST = (SourceType.BANK, SourceType.VERIFIED, SourceType.GENERATED)


class OverrideSource(Protocol):
    def get_override(self, guide_hash: str) -> VariantAssignment | None: ...


def parse_buckets(names: Sequence[str]) -> tuple[VariantAssignment, ...]:
    """Parse configured bucket names, dropping unknown ones."""
    buckets = []
    for name in names:
        try:
            buckets.append(VariantAssignment(name.strip().lower()))
        except ValueError:
            logger.warning(f"Ignoring unknown variant bucket {name!r}")
    return tuple(buckets) or DEFAULT_BUCKETS


def hash_bucket(user_id: str | None, guide_hash: str, bucket_count: int) -> int:
    """Stable bucket index for a (learner, guide) pair."""
    identity = f"{user_id or ANONYMOUS_LEARNER}:{guide_hash}"
    digest = hashlib.sha256(identity.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % bucket_count


class VariantAssigner:
    """Resolves the variant for a (learner, guide) pair."""

    def __init__(
        self,
        overrides: OverrideSource | None = None,
        buckets: Sequence[VariantAssignment] = DEFAULT_BUCKETS,
    ):
        if not buckets:
            raise ValueError("At least one variant bucket is required")
        self.overrides = overrides
        self.buckets = tuple(buckets)

    @classmethod
    def from_settings(cls, settings, overrides: OverrideSource | None = None) -> VariantAssigner:
        return cls(overrides=overrides, buckets=parse_buckets(settings.get_variant_buckets()))

    def assign(self, user_id: str | None, guide_hash: str) -> VariantAssignment:
        if self.overrides is not None:
            override = self.overrides.get_override(guide_hash)
            if override is not None:
                return override
        return self.buckets[hash_bucket(user_id, guide_hash, len(self.buckets))]


def tier_order(variant: VariantAssignment | None, slot_index: int = 0) -> tuple[SourceType, ...]:
    """
    Tier order for one target.

    Split alternates verified-first and bank-first across targets.
    Generation is always the last resort.
    """
    if variant == VariantAssignment.BANK_FIRST:
        return _BANK_FIRST
    if variant == VariantAssignment.SPLIT:
        return _VERIFIED_FIRST if slot_index % 2 == 0 else _BANK_FIRST
    return _VERIFIED_FIRST
