"""
Practice Funnel Data Models.

Plain dataclasses shared by every stage of the scheduler:
- Question: explicit question record (replaces loosely-shaped dicts)
- ConceptMasteryRecord / FunnelState: the learner's persisted mastery
- FunnelBatchMeta: immutable description of one batch selection
- GuideContext: read-only source material handed in by the caller
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class SourceType(str, Enum):
    """Tier a question was sourced from."""

    VERIFIED = "verified"  # Curated, approved items
    BANK = "bank"  # Precomputed per-guide item bank
    GENERATED = "generated"  # On-demand generation

    @classmethod
    def parse(cls, value: str | None) -> SourceType:
        """Parse a tier name, accepting the legacy gold/prefab spellings."""
        aliases = {"gold": cls.VERIFIED, "prefab": cls.BANK}
        if value is None:
            return cls.GENERATED
        text = str(value).strip().lower()
        if text in aliases:
            return aliases[text]
        return cls(text)


class VariantAssignment(str, Enum):
    """Which item tier is tried first for a (learner, guide) pair."""

    VERIFIED_FIRST = "verified_first"
    BANK_FIRST = "bank_first"
    SPLIT = "split"


# =============================================================================
# Questions
# =============================================================================


@dataclass
class Question:
    """A single multiple-choice practice question."""

    id: str
    text: str
    options: list[str]
    correct_answer: str
    concept_tags: list[str] = field(default_factory=list)
    source_type: SourceType = SourceType.GENERATED

    explanation: str = ""
    module_id: str | None = None
    guide_hash: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        """
        Create a Question from a stored row or API payload.

        Accepts both snake_case keys and the camelCase keys used by the
        web client (questionText, correctAnswer, studyConcepts, sourceType).
        """
        text = data.get("text", data.get("questionText", ""))
        tags = data.get("concept_tags", data.get("studyConcepts")) or []
        return cls(
            id=str(data["id"]),
            text=str(text or ""),
            options=[str(o) for o in (data.get("options") or [])],
            correct_answer=str(data.get("correct_answer", data.get("correctAnswer", "")) or ""),
            concept_tags=[str(t) for t in tags],
            source_type=SourceType.parse(data.get("source_type", data.get("sourceType"))),
            explanation=str(data.get("explanation") or ""),
            module_id=data.get("module_id", data.get("module")),
            guide_hash=data.get("guide_hash", data.get("guideHash")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "text": self.text,
            "options": list(self.options),
            "correct_answer": self.correct_answer,
            "concept_tags": list(self.concept_tags),
            "source_type": self.source_type.value,
            "explanation": self.explanation,
            "module_id": self.module_id,
            "guide_hash": self.guide_hash,
        }

    def with_source(self, source_type: SourceType, guide_hash: str | None = None) -> Question:
        """Copy tagged with the tier (and guide) it was delivered from."""
        return replace(
            self,
            source_type=source_type,
            guide_hash=guide_hash if guide_hash is not None else self.guide_hash,
        )


# =============================================================================
# Mastery State
# =============================================================================


@dataclass
class ConceptMasteryRecord:
    """Answer history for one concept."""

    key: str
    display_name: str
    attempts: int = 0
    correct: int = 0

    # Behavioural signals feeding the priority score
    tutor_touches: int = 0
    avg_time_to_answer_ms: float | None = None
    last_seen_at: datetime | None = None

    def __post_init__(self):
        if self.attempts < 0 or self.correct < 0 or self.correct > self.attempts:
            raise ValueError(
                f"Invalid mastery counts for {self.key!r}: "
                f"correct={self.correct}, attempts={self.attempts}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "display_name": self.display_name,
            "attempts": self.attempts,
            "correct": self.correct,
            "tutor_touches": self.tutor_touches,
            "avg_time_to_answer_ms": self.avg_time_to_answer_ms,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConceptMasteryRecord:
        last_seen = data.get("last_seen_at")
        return cls(
            key=data["key"],
            display_name=data.get("display_name") or data["key"],
            attempts=int(data.get("attempts", 0)),
            correct=int(data.get("correct", 0)),
            tutor_touches=int(data.get("tutor_touches", 0)),
            avg_time_to_answer_ms=data.get("avg_time_to_answer_ms"),
            last_seen_at=datetime.fromisoformat(last_seen) if last_seen else None,
        )


@dataclass
class FunnelState:
    """A learner's mastery records for one guide, keyed by ConceptKey."""

    concepts: dict[str, ConceptMasteryRecord] = field(default_factory=dict)

    def get(self, key: str) -> ConceptMasteryRecord | None:
        return self.concepts.get(key)

    def copy(self) -> FunnelState:
        """Deep enough copy for pure updates (records are replaced, not mutated)."""
        return FunnelState(concepts={k: replace(v) for k, v in self.concepts.items()})

    def to_dict(self) -> dict[str, Any]:
        return {"concepts": {k: v.to_dict() for k, v in self.concepts.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FunnelState:
        concepts = (data or {}).get("concepts") or {}
        return cls(
            concepts={
                key: ConceptMasteryRecord.from_dict({"key": key, **value})
                for key, value in concepts.items()
            }
        )


# =============================================================================
# Guide Input
# =============================================================================


@dataclass
class GuideConcept:
    """A concept label extracted from a study guide, with free metadata."""

    label: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GuideContext:
    """
    Source material for a batch request.

    A mixed guide carries two or more per-module parts in `modules`. Each
    part supplies its own item pools and generation content; the mixed
    guide's concepts span all of them.
    """

    guide_hash: str
    title: str = ""
    module_id: str | None = None
    concepts: list[GuideConcept] = field(default_factory=list)
    content: str = ""
    modules: list[GuideContext] = field(default_factory=list)

    @property
    def seen_module(self) -> str:
        """Key of the seen-set this guide's questions are recorded under."""
        return self.module_id or self.guide_hash or "custom"

    @property
    def parts(self) -> list[GuideContext]:
        """Module parts with both a guide hash and a module id."""
        return [m for m in self.modules if m.guide_hash and m.module_id]

    @property
    def is_mixed(self) -> bool:
        return len(self.parts) >= 2

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GuideContext:
        modules = data.get("modules") or data.get("mixed_modules") or data.get("mixedModules") or []
        items = data.get("concepts") or data.get("items") or []
        concepts = []
        for item in items:
            if isinstance(item, str):
                concepts.append(GuideConcept(label=item))
            else:
                label = item.get("label") or item.get("title") or ""
                metadata = {k: v for k, v in item.items() if k not in ("label", "title")}
                concepts.append(GuideConcept(label=label, metadata=metadata))
        guide = cls(
            guide_hash=str(data.get("guide_hash") or data.get("guideHash") or "custom"),
            title=data.get("title", ""),
            module_id=data.get("module_id") or data.get("moduleId"),
            concepts=concepts,
            content=data.get("content", ""),
            modules=[cls.from_dict(m) for m in modules if isinstance(m, dict)],
        )
        if not guide.concepts:
            guide.concepts = [c for part in guide.parts for c in part.concepts]
        return guide


# =============================================================================
# Batch Metadata
# =============================================================================


@dataclass
class SourceCounts:
    """Questions delivered per tier."""

    verified: int = 0
    bank: int = 0
    generated: int = 0

    def add(self, source_type: SourceType, n: int = 1) -> None:
        setattr(self, source_type.value, getattr(self, source_type.value) + n)

    def merge(self, other: SourceCounts) -> None:
        self.verified += other.verified
        self.bank += other.bank
        self.generated += other.generated

    @property
    def total(self) -> int:
        return self.verified + self.bank + self.generated

    def to_dict(self) -> dict[str, int]:
        return {"verified": self.verified, "bank": self.bank, "generated": self.generated}


@dataclass(frozen=True)
class FunnelBatchMeta:
    """Immutable record of one completed batch selection."""

    guide_hash: str
    focus_targets: tuple[str, ...]
    explore_targets: tuple[str, ...]
    targets_per_question: tuple[str, ...]
    target_by_question_id: dict[str, str]
    source_counts: SourceCounts
    total: int
    focus_count: int
    explore_count: int
    guide_title: str = ""
    variant: VariantAssignment | None = None
    backfill_attempts: int = 0
    dropped_generated: int = 0
    shortfall: int = 0
    shortfall_by_target: dict[str, int] = field(default_factory=dict)
    display_by_key: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "guide_hash": self.guide_hash,
            "guide_title": self.guide_title,
            "created_at": self.created_at.isoformat(),
            "total": self.total,
            "focus_count": self.focus_count,
            "explore_count": self.explore_count,
            "focus_targets": list(self.focus_targets),
            "explore_targets": list(self.explore_targets),
            "targets_per_question": list(self.targets_per_question),
            "target_by_question_id": dict(self.target_by_question_id),
            "source_counts": self.source_counts.to_dict(),
            "variant": self.variant.value if self.variant else None,
            "backfill_attempts": self.backfill_attempts,
            "dropped_generated": self.dropped_generated,
            "shortfall": self.shortfall,
            "shortfall_by_target": dict(self.shortfall_by_target),
            "display_by_key": dict(self.display_by_key),
        }


def load_guide(path: str | Path) -> GuideContext:
    """Read a guide from a JSON file (the CLI's guide format)."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Guide file {path} must contain a JSON object")
    data.setdefault("guide_hash", data.get("guideHash") or path.stem)
    return GuideContext.from_dict(data)
