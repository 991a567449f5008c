"""
Item pools for the verified and bank tiers.

Candidates are ranked per target concept:

    score = 3 * (tags containing / contained in the target) + stem token overlap

Only positively scored candidates are offered for a concept, except for the
catch-all general target which accepts any candidate.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from funnel.concepts.normalizer import GENERAL_CONCEPT, normalize_concept_key, tokenize
from funnel.core.models import Question, SourceType

TAG_MATCH_WEIGHT = 3


class ItemStore(Protocol):
    """Read-only source of precomputed questions."""

    async def list_items(self, module_id: str | None, guide_hash: str | None) -> list[Question]: ...


class InMemoryItemStore:
    """ItemStore over a fixed list of questions (tests, offline use)."""

    def __init__(self, questions: Iterable[Question] = (), source_type: SourceType | None = None):
        self.source_type = source_type
        self.questions = [
            q.with_source(source_type) if source_type is not None else q for q in questions
        ]

    async def list_items(self, module_id: str | None, guide_hash: str | None) -> list[Question]:
        if module_id is None:
            return list(self.questions)
        return [q for q in self.questions if q.module_id in (None, module_id)]


def _tag_matches(question: Question, target_key: str) -> int:
    needle = normalize_concept_key(target_key)
    if not needle:
        return 0
    hits = 0
    for tag in question.concept_tags:
        key = normalize_concept_key(tag)
        if key and (needle in key or key in needle):
            hits += 1
    return hits


def score_question_for_concept(question: Question, target_key: str) -> int:
    """Relevance of a question to a target concept (0 = unrelated)."""
    target_tokens = set(tokenize(target_key))
    stem_tokens = set(tokenize(question.text))
    return TAG_MATCH_WEIGHT * _tag_matches(question, target_key) + len(target_tokens & stem_tokens)


def candidates_for_concept(questions: Iterable[Question], target_key: str) -> list[Question]:
    """
    Questions relevant to a target, best first.

    Equal scores keep pool order.
    """
    scored = [(score_question_for_concept(q, target_key), i, q) for i, q in enumerate(questions)]
    if target_key != GENERAL_CONCEPT:
        scored = [s for s in scored if s[0] > 0]
    scored.sort(key=lambda s: (-s[0], s[1]))
    return [q for _, _, q in scored]
