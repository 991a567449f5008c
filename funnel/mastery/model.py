"""
Beta-Binomial Mastery Model.

Each concept's answer history is treated as draws from a Beta prior:

    expected = (correct + alpha) / (attempts + alpha + beta)

With alpha = beta = 1 an untested concept sits at 0.5 instead of 0 or 1,
and a single lucky answer cannot push it to certainty.

Priority (higher = practice sooner):

    w_weak * (1 - expected)
  + w_unc  * std(Beta)          # fewer attempts -> wider posterior
  + w_time * slow-answer factor
  + w_tutor * tutor-usage factor
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from funnel.concepts.normalizer import concept_keys_for_tags
from funnel.core.models import ConceptMasteryRecord, FunnelState, Question

# Answer times beyond this count toward the slow-answer factor
SLOW_ANSWER_FLOOR_MS = 60_000
SLOW_ANSWER_SPAN_MS = 60_000
TUTOR_TOUCH_SATURATION = 3


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class MasteryConfig:
    """Configuration for the mastery model."""

    prior_alpha: float = 1.0
    prior_beta: float = 1.0
    weight_weakness: float = 1.0
    weight_uncertainty: float = 0.4
    weight_time: float = 0.3
    weight_tutor: float = 0.2

    @classmethod
    def from_settings(cls, settings) -> MasteryConfig:
        weights = settings.get_priority_weights()
        return cls(
            prior_alpha=settings.mastery_prior_alpha,
            prior_beta=settings.mastery_prior_beta,
            weight_weakness=weights["weakness"],
            weight_uncertainty=weights["uncertainty"],
            weight_time=weights["time"],
            weight_tutor=weights["tutor"],
        )


class MasteryModel:
    """
    Derives expected mastery and practice priority from mastery records.

    Stateless apart from its configuration, so one instance can be shared.
    """

    def __init__(self, config: MasteryConfig | None = None):
        self.config = config or MasteryConfig()
        if self.config.prior_alpha <= 0 or self.config.prior_beta <= 0:
            raise ValueError("Mastery prior pseudo-counts must be positive")

    def _posterior(self, record: ConceptMasteryRecord) -> tuple[float, float]:
        a = record.correct + self.config.prior_alpha
        b = (record.attempts - record.correct) + self.config.prior_beta
        return a, b

    def expected_mastery(self, record: ConceptMasteryRecord) -> float:
        """Posterior mean probability of a correct answer, in [0, 1]."""
        a, b = self._posterior(record)
        return a / (a + b)

    def uncertainty(self, record: ConceptMasteryRecord) -> float:
        """Posterior standard deviation."""
        a, b = self._posterior(record)
        total = a + b
        return math.sqrt((a * b) / (total * total * (total + 1)))

    def priority(self, record: ConceptMasteryRecord) -> float:
        """
        Learning priority for a concept.

        Args:
            record: Concept mastery record

        Returns:
            Non-negative score, higher means more urgent to practice
        """
        cfg = self.config
        expected = self.expected_mastery(record)

        avg_time = record.avg_time_to_answer_ms or 0.0
        time_factor = _clamp((avg_time - SLOW_ANSWER_FLOOR_MS) / SLOW_ANSWER_SPAN_MS, 0.0, 1.0)
        tutor_factor = _clamp(record.tutor_touches / TUTOR_TOUCH_SATURATION, 0.0, 1.0)

        return (
            cfg.weight_weakness * (1.0 - expected)
            + cfg.weight_uncertainty * self.uncertainty(record)
            + cfg.weight_time * time_factor
            + cfg.weight_tutor * tutor_factor
        )

    def rank_concepts(self, state: FunnelState, min_attempts: int = 1) -> list[ConceptMasteryRecord]:
        """
        Rank tracked concepts by priority, highest first.

        Ties are broken by ConceptKey so the order is deterministic.
        """
        records = [r for r in state.concepts.values() if r.attempts >= min_attempts]
        return sorted(records, key=lambda r: (-self.priority(r), r.key))


# =============================================================================
# State Updates (pure)
# =============================================================================


def _ensure_record(state: FunnelState, key: str, display: str) -> ConceptMasteryRecord:
    record = state.concepts.get(key)
    if record is None:
        record = ConceptMasteryRecord(key=key, display_name=display or key)
        state.concepts[key] = record
    elif not record.display_name and display:
        record.display_name = display
    return record


def apply_answer(
    state: FunnelState,
    question: Question,
    is_correct: bool,
    time_to_answer_ms: float | None = None,
    now: datetime | None = None,
) -> tuple[FunnelState, list[str]]:
    """
    Record one answered question against every concept it is tagged with.

    Binary credit only: attempts += 1 and correct += 1 when right.
    The input state is not modified.

    Returns:
        (new state, updated ConceptKeys in tag order)
    """
    now = now or datetime.now(UTC)
    updated = state.copy()
    keys: list[str] = []

    for key, display in concept_keys_for_tags(question.concept_tags):
        record = _ensure_record(updated, key, display)
        prev_attempts = record.attempts

        avg = record.avg_time_to_answer_ms
        if time_to_answer_ms is not None and math.isfinite(time_to_answer_ms) and time_to_answer_ms > 0:
            if avg is None:
                avg = float(time_to_answer_ms)
            else:
                avg = (avg * prev_attempts + time_to_answer_ms) / (prev_attempts + 1)

        updated.concepts[key] = replace(
            record,
            attempts=prev_attempts + 1,
            correct=record.correct + (1 if is_correct else 0),
            avg_time_to_answer_ms=avg,
            last_seen_at=now,
        )
        keys.append(key)

    return updated, keys


def record_tutor_touch(
    state: FunnelState,
    question: Question,
    now: datetime | None = None,
) -> tuple[FunnelState, list[str]]:
    """Note that the learner asked the tutor about a question (pure)."""
    now = now or datetime.now(UTC)
    updated = state.copy()
    keys: list[str] = []
    for key, display in concept_keys_for_tags(question.concept_tags):
        record = _ensure_record(updated, key, display)
        updated.concepts[key] = replace(
            record,
            tutor_touches=record.tutor_touches + 1,
            last_seen_at=now,
        )
        keys.append(key)
    return updated, keys
