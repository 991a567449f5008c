"""
Remote stores over the shared PostgREST API.

Tables:
- user_seen_questions: (user_id, module, fingerprint) unique
- gold_questions: curated items, only status=approved are served
- study_guide_cache: per-guide precomputed question bank
- user_concept_mastery: (user_id, guide_hash, concept) unique
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from funnel.core.errors import RemoteStoreError
from funnel.core.models import ConceptMasteryRecord, Question, SourceType
from funnel.integrations.rest_client import RestClient
from funnel.store.local_store import SeenRow

SEEN_TABLE = "user_seen_questions"
VERIFIED_TABLE = "gold_questions"
BANK_TABLE = "study_guide_cache"
MASTERY_TABLE = "user_concept_mastery"


class RestSeenStore:
    """Seen fingerprints shared across a learner's devices."""

    def __init__(self, client: RestClient):
        self.client = client

    async def fetch(self, learner_id: str, module_id: str) -> set[str]:
        rows = await self.client.select(
            SEEN_TABLE,
            {"user_id": learner_id, "module": module_id},
            columns="fingerprint",
        )
        return {str(row["fingerprint"]) for row in rows if row.get("fingerprint")}

    async def add(self, learner_id: str, module_id: str, rows: list[SeenRow]) -> None:
        payload = [
            {
                "user_id": learner_id,
                "module": module_id,
                "source_type": row.source_type or "generated",
                "question_id": row.question_id,
                "fingerprint": row.fingerprint,
            }
            for row in rows
        ]
        # Union semantics: an existing row is never overwritten
        await self.client.upsert(
            SEEN_TABLE,
            payload,
            on_conflict="user_id,module,fingerprint",
            ignore_duplicates=True,
        )


class VerifiedItemStore:
    """Approved curated questions for a module."""

    def __init__(self, client: RestClient):
        self.client = client

    async def list_items(self, module_id: str | None, guide_hash: str | None) -> list[Question]:
        if not module_id:
            return []
        rows = await self.client.select(
            VERIFIED_TABLE,
            {"module": module_id, "status": "approved"},
            order="created_at.desc",
        )
        questions = []
        for row in rows:
            payload = row.get("question") or {}
            try:
                question = Question.from_dict({**payload, "id": row.get("id") or payload.get("id")})
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed verified item {row.get('id')}: {e}")
                continue
            questions.append(question.with_source(SourceType.VERIFIED, guide_hash))
        return questions


def active_bank_questions(questions: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Latest non-retired revision per bank slot.

    Bank questions carry a slot index; replacements reuse the index of the
    question they replace, so the last active entry for an index wins.
    """
    active: dict[int, dict[str, Any]] = {}
    for position, question in enumerate(questions or []):
        review = question.get("adminReview") or {}
        if review.get("status") == "retired":
            continue
        index = question.get("prefabIndex")
        if not isinstance(index, int) or isinstance(index, bool):
            index = position
        active[index] = question
    return [active[i] for i in sorted(active)]


class BankItemStore:
    """Precomputed questions cached for a guide."""

    def __init__(self, client: RestClient):
        self.client = client

    async def list_items(self, module_id: str | None, guide_hash: str | None) -> list[Question]:
        if not guide_hash:
            return []
        rows = await self.client.select(
            BANK_TABLE,
            {"guide_hash": guide_hash},
            columns="guide_hash,questions",
        )
        if not rows:
            return []

        questions = []
        for position, payload in enumerate(active_bank_questions(rows[0].get("questions") or [])):
            payload = {"id": f"{guide_hash}:{position}", **payload}
            try:
                question = Question.from_dict(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed bank item in {guide_hash}: {e}")
                continue
            if question.module_id is None:
                question.module_id = module_id
            questions.append(question.with_source(SourceType.BANK, guide_hash))
        return questions


class RestMasteryStore:
    """Best-effort mirror of mastery records; failures are logged, never raised."""

    def __init__(self, client: RestClient, prior_alpha: float = 1.0, prior_beta: float = 1.0):
        self.client = client
        self.prior_alpha = prior_alpha
        self.prior_beta = prior_beta

    def _row(self, learner_id: str, guide_hash: str, record: ConceptMasteryRecord) -> dict[str, Any]:
        return {
            "user_id": learner_id,
            "guide_hash": guide_hash,
            "concept": record.key,
            "alpha": record.correct + self.prior_alpha,
            "beta": (record.attempts - record.correct) + self.prior_beta,
            "attempts": record.attempts,
            "avg_time_to_answer_ms": record.avg_time_to_answer_ms,
            "tutor_touches": record.tutor_touches,
            "updated_at": datetime.now(UTC).isoformat(),
        }

    async def upsert(
        self,
        learner_id: str,
        guide_hash: str,
        records: Iterable[ConceptMasteryRecord],
    ) -> bool:
        rows = [self._row(learner_id, guide_hash, r) for r in records]
        if not rows:
            return True
        try:
            await self.client.upsert(MASTERY_TABLE, rows, on_conflict="user_id,guide_hash,concept")
        except RemoteStoreError as e:
            logger.warning(f"Concept mastery upsert failed: {e}")
            return False
        return True
