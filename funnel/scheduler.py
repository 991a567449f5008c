"""
Practice Scheduler: session entry point.

Wires the components for "start session" and "continue" requests:

    universe -> target selection -> variant -> batch sourcing

Scheduling itself performs no writes. Every method returns the new state
together with commands (MarkSeen, PersistMastery) that a CommandExecutor
applies. A batch the caller abandons therefore never marks anything seen.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from funnel.concepts.universe import build_concept_universe
from funnel.core.invariants import check_selection, check_universe, verify
from funnel.core.models import (
    ConceptMasteryRecord,
    FunnelBatchMeta,
    FunnelState,
    GuideContext,
    Question,
)
from funnel.dedup.seen_index import RemoteSeenStore, SeenIndex
from funnel.integrations.remote_stores import (
    BankItemStore,
    RestMasteryStore,
    RestSeenStore,
    VerifiedItemStore,
)
from funnel.integrations.rest_client import RestClient
from funnel.mastery.model import MasteryConfig, MasteryModel, apply_answer, record_tutor_touch
from funnel.selection.target_selector import SelectionConfig, TargetSelector
from funnel.sourcing.generation import HttpQuestionGenerator, QuestionGenerator
from funnel.sourcing.pipeline import BatchSourcingPipeline, PipelineConfig
from funnel.sourcing.pools import ItemStore
from funnel.store.local_store import LocalStore
from funnel.variants.assignment import OverrideSource, VariantAssigner

# =============================================================================
# Commands
# =============================================================================


@dataclass(frozen=True)
class MarkSeen:
    """Record a delivered batch in the learner's seen set."""

    learner_id: str
    module_id: str
    questions: tuple[Question, ...]


@dataclass(frozen=True)
class PersistMastery:
    """Write updated mastery records."""

    learner_id: str
    guide_hash: str
    records: tuple[ConceptMasteryRecord, ...]


Command = MarkSeen | PersistMastery


@dataclass
class BatchPlan:
    """A batch plus the side effects to run once it is delivered."""

    questions: list[Question]
    meta: FunnelBatchMeta
    warning: str | None = None
    commands: list[Command] = field(default_factory=list)


# =============================================================================
# Scheduler
# =============================================================================


class PracticeScheduler:
    """Plans practice batches and folds answers into mastery state."""

    def __init__(
        self,
        pipeline: BatchSourcingPipeline,
        selector: TargetSelector | None = None,
        assigner: VariantAssigner | None = None,
        default_count: int = 10,
    ):
        self.pipeline = pipeline
        self.selector = selector or TargetSelector()
        self.assigner = assigner or VariantAssigner()
        self.default_count = default_count

    @classmethod
    def from_settings(
        cls,
        settings,
        verified: ItemStore | None = None,
        bank: ItemStore | None = None,
        generator: QuestionGenerator | None = None,
        overrides: OverrideSource | None = None,
        rng: random.Random | None = None,
    ) -> PracticeScheduler:
        model = MasteryModel(MasteryConfig.from_settings(settings))
        return cls(
            pipeline=BatchSourcingPipeline(verified, bank, generator, PipelineConfig.from_settings(settings)),
            selector=TargetSelector(model, SelectionConfig.from_settings(settings), rng),
            assigner=VariantAssigner.from_settings(settings, overrides),
            default_count=settings.batch_default_questions,
        )

    @property
    def model(self) -> MasteryModel:
        return self.selector.model

    async def next_batch(
        self,
        learner_id: str,
        guide: GuideContext,
        state: FunnelState,
        seen: Iterable[str] = (),
        count: int | None = None,
        existing_questions: Iterable[Question] = (),
        extra_concepts: Iterable[str] = (),
    ) -> BatchPlan:
        """
        Plan the next batch for a learner.

        Args:
            learner_id: Opaque learner id
            guide: Guide to practice
            state: Learner's mastery state for the guide
            seen: Fingerprints the learner has already been shown
            count: Requested batch size (defaults to the configured size)
            existing_questions: Questions already delivered this session
            extra_concepts: Caller-supplied concept labels

        Returns:
            BatchPlan whose commands mark the batch seen once executed
        """
        total = count if count is not None else self.default_count
        universe = build_concept_universe(guide.concepts, state.concepts, extra_concepts)
        verify(check_universe, universe)

        selection = self.selector.select(universe, state, total)
        verify(check_selection, selection.targets_per_question, selection.focus_targets_distinct, total)

        variant = self.assigner.assign(learner_id, guide.guide_hash)
        result = await self.pipeline.build_batch(
            selection,
            guide,
            seen=seen,
            variant=variant,
            display_by_key=universe,
            existing_questions=existing_questions,
        )

        commands: list[Command] = []
        if result.questions:
            commands.append(MarkSeen(learner_id, guide.seen_module, tuple(result.questions)))
        return BatchPlan(result.questions, result.meta, result.warning, commands)

    def record_answer(
        self,
        learner_id: str,
        guide_hash: str,
        state: FunnelState,
        question: Question,
        is_correct: bool,
        time_to_answer_ms: float | None = None,
        now: datetime | None = None,
    ) -> tuple[FunnelState, list[Command]]:
        """Fold one answer into the state; returns (new state, commands)."""
        new_state, keys = apply_answer(state, question, is_correct, time_to_answer_ms, now)
        records = tuple(new_state.concepts[k] for k in keys)
        return new_state, [PersistMastery(learner_id, guide_hash, records)]

    def record_tutor_touch(
        self,
        learner_id: str,
        guide_hash: str,
        state: FunnelState,
        question: Question,
        now: datetime | None = None,
    ) -> tuple[FunnelState, list[Command]]:
        new_state, keys = record_tutor_touch(state, question, now)
        records = tuple(new_state.concepts[k] for k in keys)
        return new_state, [PersistMastery(learner_id, guide_hash, records)]


# =============================================================================
# Command Execution
# =============================================================================


class CommandExecutor:
    """
    Applies scheduler commands.

    Local writes happen before execute() returns. Remote writes run in the
    background unless wait=True.
    """

    def __init__(
        self,
        local: LocalStore,
        remote_seen: RemoteSeenStore | None = None,
        remote_mastery: RestMasteryStore | None = None,
    ):
        self.local = local
        self.remote_seen = remote_seen
        self.remote_mastery = remote_mastery
        self._indexes: dict[str, SeenIndex] = {}
        self._background: set[asyncio.Task] = set()

    def seen_index(self, learner_id: str) -> SeenIndex:
        index = self._indexes.get(learner_id)
        if index is None:
            index = SeenIndex(learner_id, self.local, self.remote_seen)
            self._indexes[learner_id] = index
        return index

    async def execute(self, commands: Iterable[Command], wait: bool = False) -> None:
        for command in commands:
            if isinstance(command, MarkSeen):
                added = await self.seen_index(command.learner_id).mark_seen(
                    command.questions, command.module_id, wait=wait
                )
                logger.debug(f"Marked {len(command.questions)} questions seen ({added} new fingerprints)")
            elif isinstance(command, PersistMastery):
                self.local.save_mastery_records(command.learner_id, command.guide_hash, command.records)
                if self.remote_mastery is not None:
                    upsert = self.remote_mastery.upsert(
                        command.learner_id, command.guide_hash, command.records
                    )
                    if wait:
                        await upsert
                    else:
                        task = asyncio.create_task(upsert)
                        self._background.add(task)
                        task.add_done_callback(self._background.discard)
            else:
                raise TypeError(f"Unknown command: {command!r}")

    async def drain(self) -> None:
        """Wait for all background remote writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        for index in self._indexes.values():
            await index.drain()


# =============================================================================
# Settings Wiring
# =============================================================================


@dataclass
class FunnelServices:
    """
    Scheduler and executor wired from settings.

    Remote stores are attached when REMOTE_STORE_URL is set and the
    generation tier when GENERATION_API_URL is set. Without them the
    scheduler runs on local state only.
    """

    scheduler: PracticeScheduler
    executor: CommandExecutor
    rest_client: RestClient | None = None
    generator: HttpQuestionGenerator | None = None

    @classmethod
    def from_settings(
        cls,
        settings,
        local: LocalStore,
        rng: random.Random | None = None,
    ) -> FunnelServices:
        rest_client = None
        verified = bank = remote_seen = remote_mastery = None
        if settings.remote_store_url:
            rest_client = RestClient(
                settings.remote_store_url,
                api_key=settings.remote_store_api_key,
                timeout_ms=settings.remote_store_timeout_ms,
                retry_attempts=settings.remote_store_retry_attempts,
            )
            verified = VerifiedItemStore(rest_client)
            bank = BankItemStore(rest_client)
            remote_seen = RestSeenStore(rest_client)
            remote_mastery = RestMasteryStore(
                rest_client, prior_alpha=settings.mastery_prior_alpha, prior_beta=settings.mastery_prior_beta
            )

        generator = None
        if settings.generation_api_url:
            generator = HttpQuestionGenerator(
                settings.generation_api_url,
                timeout=settings.generation_timeout_seconds,
            )

        logger.debug(
            f"Funnel services: remote store {'on' if rest_client else 'off'}, "
            f"generation {'on' if generator else 'off'}"
        )
        scheduler = PracticeScheduler.from_settings(
            settings, verified=verified, bank=bank, generator=generator, overrides=local, rng=rng
        )
        executor = CommandExecutor(local, remote_seen=remote_seen, remote_mastery=remote_mastery)
        return cls(scheduler, executor, rest_client, generator)

    async def aclose(self) -> None:
        """Finish background writes and close HTTP clients."""
        await self.executor.drain()
        if self.rest_client is not None:
            await self.rest_client.close()
        if self.generator is not None:
            await self.generator.close()
