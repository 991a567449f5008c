"""
Batch Sourcing Pipeline.

Fills each selected target from the tiers in variant order:

    verified items -> item bank -> on-demand generation

Targets are sourced concurrently. All per-target tasks share one
WorkingFingerprints set, so a fingerprint can be claimed by at most one
question in the batch, and never by one the learner has already seen.

Running short is not an error: the batch is returned with whatever could be
sourced, and the shortfall is recorded in the batch metadata.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from loguru import logger

from funnel.concepts.universe import build_concept_module_map
from funnel.core.errors import QuestionValidationError, RemoteStoreError
from funnel.core.invariants import check_batch_disjoint, verify
from funnel.core.models import (
    FunnelBatchMeta,
    GuideContext,
    Question,
    SourceCounts,
    SourceType,
    VariantAssignment,
)
from funnel.dedup.fingerprint import build_fingerprint_set, fingerprint_variants
from funnel.selection.target_selector import TargetSelection
from funnel.sourcing.generation import GenerationRequest, QuestionGenerator, validate_generated
from funnel.sourcing.pools import ItemStore, candidates_for_concept
from funnel.variants.assignment import tier_order

SHORTFALL_WARNING = "Batch shorter than requested; try again for more questions."


class WorkingFingerprints:
    """Fingerprints claimed so far in one batch (seen set included)."""

    def __init__(self, initial: Iterable[str] = ()):
        self._fingerprints: set[str] = set(initial)
        self._lock = asyncio.Lock()

    async def claim(self, question: Question) -> bool:
        """
        Atomically claim every fingerprint variant of a question.

        Returns:
            False if any variant is already claimed (nothing is changed)
        """
        variants = fingerprint_variants(question)
        async with self._lock:
            if variants & self._fingerprints:
                return False
            self._fingerprints |= variants
            return True

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._fingerprints)

    def __len__(self) -> int:
        return len(self._fingerprints)


@dataclass
class PipelineConfig:
    """Configuration for batch sourcing."""

    generation_max_attempts: int = 3
    generation_timeout_seconds: float = 45.0

    @classmethod
    def from_settings(cls, settings) -> PipelineConfig:
        return cls(
            generation_max_attempts=settings.generation_max_attempts,
            generation_timeout_seconds=settings.generation_timeout_seconds,
        )


@dataclass
class TargetFill:
    """Outcome of filling one target concept."""

    concept_key: str
    requested: int
    questions: list[Question] = field(default_factory=list)
    counts: SourceCounts = field(default_factory=SourceCounts)
    generation_attempts: int = 0
    dropped_generated: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.requested - len(self.questions))

    @property
    def shortfall(self) -> int:
        return self.remaining


@dataclass
class BatchResult:
    """A sourced batch ready for delivery."""

    questions: list[Question]
    meta: FunnelBatchMeta
    warning: str | None = None


class BatchSourcingPipeline:
    """Sources questions for selected targets from the tiered pools."""

    def __init__(
        self,
        verified: ItemStore | None = None,
        bank: ItemStore | None = None,
        generator: QuestionGenerator | None = None,
        config: PipelineConfig | None = None,
    ):
        self.stores: dict[SourceType, ItemStore | None] = {
            SourceType.VERIFIED: verified,
            SourceType.BANK: bank,
        }
        self.generator = generator
        self.config = config or PipelineConfig()

    async def load_pools(self, guide: GuideContext) -> dict[SourceType, list[Question]]:
        """
        Fetch the verified and bank pools for a guide.

        A mixed guide pools the items of every module part, each tagged with
        its part's guide hash. An unreachable store contributes an empty pool.
        """

        async def _load(source_type: SourceType, part: GuideContext) -> list[Question]:
            store = self.stores[source_type]
            if store is None:
                return []
            try:
                items = await store.list_items(part.module_id, part.guide_hash)
            except RemoteStoreError as e:
                logger.warning(f"{source_type.value} store unavailable for {part.guide_hash}: {e}")
                return []
            return [q.with_source(source_type, part.guide_hash) for q in items]

        parts = guide.parts if guide.is_mixed else [guide]
        tiers = (SourceType.VERIFIED, SourceType.BANK)
        loaded = await asyncio.gather(*[_load(tier, part) for part in parts for tier in tiers])

        pools: dict[SourceType, list[Question]] = {tier: [] for tier in tiers}
        for i, items in enumerate(loaded):
            pools[tiers[i % len(tiers)]].extend(items)
        logger.debug(
            f"Pools for {guide.guide_hash}: {len(pools[SourceType.VERIFIED])} verified, "
            f"{len(pools[SourceType.BANK])} bank from {len(parts)} module(s)"
        )
        return pools

    @staticmethod
    def generation_routes(guide: GuideContext) -> dict[str, GuideContext]:
        """
        ConceptKey -> module part whose content generates that concept.

        Only mixed guides route; concepts of a single-module guide (and
        unmapped concepts of a mixed one) use `default_part`. A part's own
        concepts belong to it unless their item id names another module.
        """
        if not guide.is_mixed:
            return {}
        by_module = {part.module_id: part for part in guide.parts}
        mapping: dict[str, str] = {}
        for part in guide.parts:
            mapping.update(build_concept_module_map(part.concepts, by_module, fallback=part.module_id))
        mapping.update(build_concept_module_map(guide.concepts, by_module))
        return {key: by_module[module_id] for key, module_id in mapping.items()}

    @staticmethod
    def default_part(guide: GuideContext) -> GuideContext:
        return guide.parts[0] if guide.is_mixed else guide

    async def fill_target(
        self,
        concept_key: str,
        count: int,
        tiers: Iterable[SourceType],
        working: WorkingFingerprints,
        pools: Mapping[SourceType, list[Question]],
        guide: GuideContext | None = None,
        display_name: str = "",
    ) -> TargetFill:
        """
        Source up to `count` unseen questions for one concept.

        Tiers are tried in order; each one only supplies what the previous
        tiers could not.
        """
        fill = TargetFill(concept_key=concept_key, requested=count)

        for tier in tiers:
            if fill.remaining == 0:
                break
            if tier == SourceType.GENERATED:
                await self._generate_into(fill, working, guide, display_name or concept_key)
                continue
            for candidate in candidates_for_concept(pools.get(tier, []), concept_key):
                if fill.remaining == 0:
                    break
                if await working.claim(candidate):
                    fill.questions.append(candidate)
                    fill.counts.add(tier)

        if fill.shortfall:
            logger.warning(f"Target {concept_key!r} short by {fill.shortfall} of {count}")
        return fill

    async def _generate_into(
        self,
        fill: TargetFill,
        working: WorkingFingerprints,
        guide: GuideContext | None,
        display_name: str,
    ) -> None:
        if self.generator is None:
            return

        guide_hash = guide.guide_hash if guide else None
        module_id = guide.module_id if guide else None

        while fill.remaining > 0 and fill.generation_attempts < self.config.generation_max_attempts:
            fill.generation_attempts += 1
            request = GenerationRequest(
                concept_key=fill.concept_key,
                display_name=display_name,
                count=fill.remaining,
                content=guide.content if guide else "",
                guide_hash=guide_hash,
                module_id=module_id,
            )
            try:
                payloads = await asyncio.wait_for(
                    self.generator.generate(request),
                    timeout=self.config.generation_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Generation timed out for {fill.concept_key!r} "
                    f"(attempt {fill.generation_attempts}/{self.config.generation_max_attempts})"
                )
                continue
            except Exception as e:
                logger.warning(
                    f"Generation failed for {fill.concept_key!r} "
                    f"(attempt {fill.generation_attempts}/{self.config.generation_max_attempts}): "
                    f"{type(e).__name__}: {e}"
                )
                continue

            for payload in payloads:
                if fill.remaining == 0:
                    break
                try:
                    question = validate_generated(payload, display_name, guide_hash, module_id)
                except QuestionValidationError as e:
                    fill.dropped_generated += 1
                    logger.debug(f"Dropped generated question: {e.reason}")
                    continue
                if not await working.claim(question):
                    fill.dropped_generated += 1
                    continue
                fill.questions.append(question)
                fill.counts.add(SourceType.GENERATED)

    async def build_batch(
        self,
        selection: TargetSelection,
        guide: GuideContext,
        seen: Iterable[str] = (),
        variant: VariantAssignment | None = None,
        display_by_key: Mapping[str, str] | None = None,
        existing_questions: Iterable[Question] = (),
    ) -> BatchResult:
        """
        Source a full batch for a target selection.

        Args:
            selection: Targets per question slot
            guide: Guide the batch is drawn from
            seen: Fingerprints the learner has already been shown
            variant: Tier order assignment (verified first when None)
            display_by_key: ConceptKey -> display name, for generation prompts
            existing_questions: Questions already in the session (never repeated)

        Returns:
            BatchResult with questions in slot order
        """
        display_by_key = dict(display_by_key or {})
        seen_set = set(seen)
        working = WorkingFingerprints(seen_set | build_fingerprint_set(existing_questions))

        # Slots per target, in order of first appearance
        slots: dict[str, int] = {}
        for key in selection.targets_per_question:
            slots[key] = slots.get(key, 0) + 1

        pools = await self.load_pools(guide) if slots else {}
        routes = self.generation_routes(guide)
        fallback = self.default_part(guide)
        fills = await asyncio.gather(*[
            self.fill_target(
                key,
                count,
                tier_order(variant, index),
                working,
                pools,
                routes.get(key, fallback),
                display_by_key.get(key, key),
            )
            for index, (key, count) in enumerate(slots.items())
        ])
        by_key = {fill.concept_key: list(fill.questions) for fill in fills}

        questions: list[Question] = []
        target_by_question_id: dict[str, str] = {}
        for key in selection.targets_per_question:
            bucket = by_key.get(key)
            if not bucket:
                continue
            question = bucket.pop(0)
            questions.append(question)
            target_by_question_id[question.id] = key

        verify(check_batch_disjoint, questions, seen_set)

        counts = SourceCounts()
        for fill in fills:
            counts.merge(fill.counts)

        shortfall = max(0, selection.total - len(questions))
        meta = FunnelBatchMeta(
            guide_hash=guide.guide_hash,
            guide_title=guide.title,
            focus_targets=tuple(selection.focus_targets_distinct),
            explore_targets=tuple(selection.explore_targets),
            targets_per_question=tuple(selection.targets_per_question),
            target_by_question_id=target_by_question_id,
            source_counts=counts,
            total=selection.total,
            focus_count=selection.focus_count,
            explore_count=selection.explore_count,
            variant=variant,
            backfill_attempts=max((f.generation_attempts for f in fills), default=0),
            dropped_generated=sum(f.dropped_generated for f in fills),
            shortfall=shortfall,
            shortfall_by_target={f.concept_key: f.shortfall for f in fills if f.shortfall},
            display_by_key=display_by_key,
        )

        logger.info(
            f"Batch for {guide.guide_hash}: {len(questions)}/{selection.total} questions "
            f"(verified={counts.verified}, bank={counts.bank}, generated={counts.generated})"
        )
        return BatchResult(
            questions=questions,
            meta=meta,
            warning=SHORTFALL_WARNING if shortfall else None,
        )
