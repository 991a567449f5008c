"""
Invariant checks.

Each check raises InvariantViolation. Tests call them directly; production
code calls them through `verify`, which logs instead of failing the session.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping

from loguru import logger

from funnel.concepts.normalizer import normalize_concept_key
from funnel.core.errors import InvariantViolation
from funnel.core.models import Question
from funnel.dedup.fingerprint import fingerprint_variants


def check_batch_disjoint(questions: Iterable[Question], seen: Iterable[str] = ()) -> None:
    """No two questions share a fingerprint, and none was seen before."""
    seen_set = set(seen)
    claimed: dict[str, str] = {}
    for question in questions:
        for fp in fingerprint_variants(question):
            if fp in seen_set:
                raise InvariantViolation(f"Question {question.id} was already seen ({fp[:12]})")
            if fp in claimed:
                raise InvariantViolation(
                    f"Questions {claimed[fp]} and {question.id} share fingerprint {fp[:12]}"
                )
            claimed[fp] = question.id


def check_selection(targets: list[str], focus_distinct: list[str], total_count: int) -> None:
    """Selection never exceeds the request and focus targets are distinct."""
    if len(targets) > total_count:
        raise InvariantViolation(f"{len(targets)} targets selected for {total_count} slots")
    if len(set(focus_distinct)) != len(focus_distinct):
        raise InvariantViolation(f"Duplicate focus targets: {focus_distinct}")


def check_universe(universe: Mapping[str, str]) -> None:
    """Every universe key is already in normalized form."""
    for key in universe:
        if normalize_concept_key(key) != key:
            raise InvariantViolation(f"Universe key {key!r} is not normalized")


def verify(check: Callable[..., None], *args) -> bool:
    """Run a check, logging a violation instead of raising."""
    try:
        check(*args)
    except InvariantViolation as e:
        logger.error(f"Invariant violated: {e}")
        return False
    return True
