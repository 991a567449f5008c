"""
Question fingerprints and seen-set tracking.
"""

from .fingerprint import (
    build_fingerprint_set,
    filter_duplicate_questions,
    filter_unseen,
    fingerprint_variants,
    has_seen,
)
from .seen_index import RemoteSeenStore, SeenIndex

__all__ = [
    "fingerprint_variants",
    "has_seen",
    "build_fingerprint_set",
    "filter_unseen",
    "filter_duplicate_questions",
    "SeenIndex",
    "RemoteSeenStore",
]
