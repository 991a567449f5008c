"""
Unit tests for the batch sourcing pipeline.
"""

import asyncio

import pytest

from funnel.core.errors import GenerationError, RemoteStoreError
from funnel.core.invariants import check_batch_disjoint
from funnel.core.models import GuideConcept, GuideContext, SourceType, VariantAssignment
from funnel.dedup.fingerprint import build_fingerprint_set
from funnel.selection.target_selector import TargetSelection
from funnel.sourcing.pipeline import (
    SHORTFALL_WARNING,
    BatchSourcingPipeline,
    PipelineConfig,
    WorkingFingerprints,
)
from funnel.sourcing.pools import InMemoryItemStore

VERIFIED_FIRST = (SourceType.VERIFIED, SourceType.BANK, SourceType.GENERATED)
BANK_FIRST = (SourceType.BANK, SourceType.VERIFIED, SourceType.GENERATED)


class ScriptedGenerator:
    """Generator returning one scripted response per call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else []
        if isinstance(response, Exception):
            raise response
        return response


class SlowGenerator:
    def __init__(self):
        self.calls = 0

    async def generate(self, request):
        self.calls += 1
        await asyncio.sleep(1.0)
        return []


class FailingStore:
    async def list_items(self, module_id, guide_hash):
        raise RemoteStoreError("bank offline")


def generated(concept: str, n: int, prefix: str = "g") -> list[dict]:
    return [
        {
            "questionText": f"{prefix}{i}: generated stem about {concept} number {i}?",
            "options": [f"{prefix}{i} option one", f"{prefix}{i} option two", f"{prefix}{i} option three"],
            "correctAnswer": "A",
            "studyConcepts": [concept],
        }
        for i in range(n)
    ]


@pytest.fixture
def guide():
    return GuideContext(guide_hash="guide-1", title="Heme", module_id="heme", content="text")


def selection_for(targets: list[str]) -> TargetSelection:
    return TargetSelection(
        total=len(targets),
        focus_count=len(targets),
        explore_count=0,
        focus_targets_distinct=list(dict.fromkeys(targets)),
        explore_targets=[],
        targets_per_question=list(targets),
    )


class TestWorkingFingerprints:
    """Tests for WorkingFingerprints."""

    @pytest.mark.asyncio
    async def test_claim_once(self, make_question):
        working = WorkingFingerprints()
        question = make_question()

        assert await working.claim(question) is True
        assert await working.claim(question) is False

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, make_question):
        working = WorkingFingerprints()
        question = make_question()

        results = await asyncio.gather(*[working.claim(question) for _ in range(20)])

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_initial_fingerprints_block(self, make_question):
        question = make_question()
        working = WorkingFingerprints(build_fingerprint_set([question]))

        assert await working.claim(question) is False


class TestFillTarget:
    """Tests for fill_target."""

    @pytest.mark.asyncio
    async def test_falls_through_tiers(self, make_question, guide):
        pools = {
            SourceType.VERIFIED: [make_question("Thalassemia", source_type=SourceType.VERIFIED)],
            SourceType.BANK: [make_question("Thalassemia", source_type=SourceType.BANK) for _ in range(1)],
        }
        generator = ScriptedGenerator([generated("Thalassemia", 2)])
        pipeline = BatchSourcingPipeline(generator=generator)

        fill = await pipeline.fill_target("thalassemia", 4, VERIFIED_FIRST, WorkingFingerprints(), pools, guide)

        assert len(fill.questions) == 4
        assert [q.source_type for q in fill.questions] == [
            SourceType.VERIFIED, SourceType.BANK, SourceType.GENERATED, SourceType.GENERATED,
        ]
        assert fill.counts.to_dict() == {"verified": 1, "bank": 1, "generated": 2}
        assert generator.requests[0].count == 2

    @pytest.mark.asyncio
    async def test_stops_once_count_met(self, make_question, guide):
        pools = {SourceType.VERIFIED: [make_question("Thalassemia") for _ in range(5)], SourceType.BANK: []}
        generator = ScriptedGenerator([])
        pipeline = BatchSourcingPipeline(generator=generator)

        fill = await pipeline.fill_target("thalassemia", 2, VERIFIED_FIRST, WorkingFingerprints(), pools, guide)

        assert len(fill.questions) == 2
        assert generator.requests == []

    @pytest.mark.asyncio
    async def test_bank_first_order(self, make_question, guide):
        pools = {
            SourceType.VERIFIED: [make_question("Thalassemia", source_type=SourceType.VERIFIED)],
            SourceType.BANK: [make_question("Thalassemia", source_type=SourceType.BANK)],
        }
        pipeline = BatchSourcingPipeline()

        fill = await pipeline.fill_target("thalassemia", 1, BANK_FIRST, WorkingFingerprints(), pools, guide)

        assert fill.questions[0].source_type == SourceType.BANK

    @pytest.mark.asyncio
    async def test_zero_yield_generation_reports_shortfall(self, guide):
        """Three empty generation attempts for four items: short, no exception."""
        generator = ScriptedGenerator([[], [{"questionText": "broken"}], GenerationError("503")])
        pipeline = BatchSourcingPipeline(generator=generator, config=PipelineConfig(generation_max_attempts=3))

        fill = await pipeline.fill_target("thalassemia", 4, VERIFIED_FIRST, WorkingFingerprints(), {}, guide)

        assert fill.questions == []
        assert fill.shortfall == 4
        assert fill.generation_attempts == 3
        assert fill.dropped_generated == 1
        assert fill.counts.generated == 0
        assert len(generator.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_for_remaining_only(self, guide):
        generator = ScriptedGenerator([generated("Thalassemia", 1, "a"), generated("Thalassemia", 2, "b")])
        pipeline = BatchSourcingPipeline(generator=generator)

        fill = await pipeline.fill_target("thalassemia", 3, VERIFIED_FIRST, WorkingFingerprints(), {}, guide)

        assert len(fill.questions) == 3
        assert [r.count for r in generator.requests] == [3, 2]

    @pytest.mark.asyncio
    async def test_duplicate_generated_items_dropped(self, guide):
        duplicate = generated("Thalassemia", 1)
        generator = ScriptedGenerator([duplicate + duplicate, generated("Thalassemia", 1, "z")])
        pipeline = BatchSourcingPipeline(generator=generator)

        fill = await pipeline.fill_target("thalassemia", 2, VERIFIED_FIRST, WorkingFingerprints(), {}, guide)

        assert len(fill.questions) == 2
        assert fill.dropped_generated == 1
        check_batch_disjoint(fill.questions)

    @pytest.mark.asyncio
    async def test_generation_timeout_retried(self, guide):
        generator = SlowGenerator()
        pipeline = BatchSourcingPipeline(
            generator=generator,
            config=PipelineConfig(generation_max_attempts=2, generation_timeout_seconds=0.01),
        )

        fill = await pipeline.fill_target("thalassemia", 1, VERIFIED_FIRST, WorkingFingerprints(), {}, guide)

        assert generator.calls == 2
        assert fill.shortfall == 1

    @pytest.mark.asyncio
    async def test_generated_items_tagged_with_target(self, guide):
        payloads = generated("Something Else", 1)
        pipeline = BatchSourcingPipeline(generator=ScriptedGenerator([payloads]))

        fill = await pipeline.fill_target(
            "thalassemia", 1, VERIFIED_FIRST, WorkingFingerprints(), {}, guide, display_name="Thalassemia"
        )

        assert "Thalassemia" in fill.questions[0].concept_tags
        assert fill.questions[0].guide_hash == "guide-1"


class TestBuildBatch:
    """Tests for build_batch."""

    @pytest.mark.asyncio
    async def test_batch_disjoint_from_seen_and_itself(self, make_question, guide):
        shared = [make_question("Thalassemia Anemia") for _ in range(3)]
        seen_question = shared[0]
        verified = InMemoryItemStore(shared, SourceType.VERIFIED)
        pipeline = BatchSourcingPipeline(verified=verified)

        result = await pipeline.build_batch(
            selection_for(["thalassemia", "anemia", "thalassemia", "anemia"]),
            guide,
            seen=build_fingerprint_set([seen_question]),
        )

        check_batch_disjoint(result.questions, build_fingerprint_set([seen_question]))
        assert len(result.questions) == 2
        assert result.meta.shortfall == 2
        assert result.warning == SHORTFALL_WARNING

    @pytest.mark.asyncio
    async def test_slot_order_and_meta(self, make_question, guide):
        verified = InMemoryItemStore(
            [make_question("Thalassemia"), make_question("Anemia"), make_question("Thalassemia")],
            SourceType.VERIFIED,
        )
        pipeline = BatchSourcingPipeline(verified=verified)
        targets = ["anemia", "thalassemia", "thalassemia"]

        result = await pipeline.build_batch(
            selection_for(targets), guide, variant=VariantAssignment.VERIFIED_FIRST
        )

        assert [result.meta.target_by_question_id[q.id] for q in result.questions] == targets
        assert result.meta.source_counts.verified == 3
        assert result.meta.shortfall == 0
        assert result.meta.variant == VariantAssignment.VERIFIED_FIRST
        assert result.meta.guide_hash == "guide-1"
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_existing_session_questions_not_repeated(self, make_question, guide):
        already = make_question("Thalassemia")
        verified = InMemoryItemStore([already, make_question("Thalassemia")], SourceType.VERIFIED)
        pipeline = BatchSourcingPipeline(verified=verified)

        result = await pipeline.build_batch(
            selection_for(["thalassemia", "thalassemia"]), guide, existing_questions=[already]
        )

        assert already.id not in [q.id for q in result.questions]
        assert len(result.questions) == 1

    @pytest.mark.asyncio
    async def test_store_failure_falls_back_to_generation(self, guide):
        pipeline = BatchSourcingPipeline(
            verified=FailingStore(),
            bank=FailingStore(),
            generator=ScriptedGenerator([generated("Thalassemia", 1)]),
        )

        result = await pipeline.build_batch(selection_for(["thalassemia"]), guide)

        assert len(result.questions) == 1
        assert result.meta.source_counts.generated == 1

    @pytest.mark.asyncio
    async def test_empty_selection(self, guide):
        result = await BatchSourcingPipeline().build_batch(TargetSelection(), guide)

        assert result.questions == []
        assert result.meta.total == 0
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_meta_is_immutable(self, make_question, guide):
        result = await BatchSourcingPipeline().build_batch(selection_for(["thalassemia"]), guide)

        with pytest.raises(AttributeError):
            result.meta.shortfall = 0
        assert result.meta.shortfall_by_target == {"thalassemia": 1}


class TestGenerationFailures:
    """Any generator failure costs an attempt, never the batch."""

    @pytest.mark.asyncio
    async def test_unexpected_error_retried(self, guide):
        generator = ScriptedGenerator([RuntimeError("boom"), generated("Thalassemia", 1)])
        pipeline = BatchSourcingPipeline(generator=generator)

        fill = await pipeline.fill_target("thalassemia", 1, VERIFIED_FIRST, WorkingFingerprints(), {}, guide)

        assert len(fill.questions) == 1
        assert fill.generation_attempts == 2

    @pytest.mark.asyncio
    async def test_connection_error_does_not_abort_batch(self, guide):
        generator = ScriptedGenerator([ConnectionError("socket reset"), generated("Thalassemia", 1)])
        pipeline = BatchSourcingPipeline(generator=generator)

        result = await pipeline.build_batch(selection_for(["thalassemia"]), guide)

        assert len(result.questions) == 1
        assert result.meta.backfill_attempts == 2
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_failing_target_leaves_siblings_intact(self, guide):
        class PerConceptGenerator:
            async def generate(self, request):
                if request.concept_key == "anemia":
                    raise KeyError("questions")
                return generated(request.display_name, request.count, prefix=request.concept_key)

        pipeline = BatchSourcingPipeline(generator=PerConceptGenerator())

        result = await pipeline.build_batch(selection_for(["thalassemia", "anemia"]), guide)

        assert [result.meta.target_by_question_id[q.id] for q in result.questions] == ["thalassemia"]
        assert result.meta.shortfall_by_target == {"anemia": 1}
        assert result.warning == SHORTFALL_WARNING


class TestGeneratedIds:
    @pytest.mark.asyncio
    async def test_numbered_generator_ids_stay_distinct(self, guide):
        class NumberingGenerator:
            async def generate(self, request):
                items = generated(request.display_name, request.count, prefix=request.concept_key)
                for i, item in enumerate(items, 1):
                    item["id"] = str(i)
                return items

        pipeline = BatchSourcingPipeline(generator=NumberingGenerator())

        result = await pipeline.build_batch(selection_for(["thalassemia", "anemia"]), guide)

        assert len(result.questions) == 2
        assert len({q.id for q in result.questions}) == 2
        assert len(result.meta.target_by_question_id) == len(result.questions)


class TestMixedModules:
    """Batches drawn from a guide spanning several modules."""

    @pytest.fixture
    def mixed_guide(self):
        heme = GuideContext(
            guide_hash="guide-heme",
            module_id="heme",
            concepts=[GuideConcept("Thalassemia", {"id": "heme-1"})],
            content="heme notes",
        )
        pulm = GuideContext(
            guide_hash="guide-pulm",
            module_id="pulm",
            concepts=[GuideConcept("Asthma", {"id": "pulm-1"})],
            content="pulm notes",
        )
        return GuideContext(guide_hash="guide-mixed", module_id="mixed", modules=[heme, pulm])

    @pytest.mark.asyncio
    async def test_pools_loaded_per_module(self, make_question, mixed_guide):
        class ModuleStore:
            def __init__(self):
                self.calls = []

            async def list_items(self, module_id, guide_hash):
                self.calls.append((module_id, guide_hash))
                concept = "Thalassemia" if module_id == "heme" else "Asthma"
                return [make_question(concept, source_type=SourceType.VERIFIED)]

        store = ModuleStore()
        pipeline = BatchSourcingPipeline(verified=store)

        result = await pipeline.build_batch(selection_for(["thalassemia", "asthma"]), mixed_guide)

        assert sorted(store.calls) == [("heme", "guide-heme"), ("pulm", "guide-pulm")]
        assert {q.guide_hash for q in result.questions} == {"guide-heme", "guide-pulm"}
        assert result.meta.source_counts.verified == 2

    @pytest.mark.asyncio
    async def test_generation_uses_module_content(self, mixed_guide):
        generator = ScriptedGenerator([])

        async def generate(request):
            generator.requests.append(request)
            return generated(request.display_name, request.count, prefix=request.concept_key)

        generator.generate = generate
        pipeline = BatchSourcingPipeline(generator=generator)

        result = await pipeline.build_batch(selection_for(["thalassemia", "asthma"]), mixed_guide)

        routed = {r.concept_key: (r.module_id, r.guide_hash, r.content) for r in generator.requests}
        assert routed == {
            "thalassemia": ("heme", "guide-heme", "heme notes"),
            "asthma": ("pulm", "guide-pulm", "pulm notes"),
        }
        by_target = {result.meta.target_by_question_id[q.id]: q.guide_hash for q in result.questions}
        assert by_target == {"thalassemia": "guide-heme", "asthma": "guide-pulm"}

    @pytest.mark.asyncio
    async def test_item_id_hint_overrides_part(self, mixed_guide):
        mixed_guide.concepts = [GuideConcept("Pulmonary Embolism", {"id": "pulm-9"})]
        mixed_guide.modules[0].concepts.append(GuideConcept("Pulmonary Embolism"))

        routes = BatchSourcingPipeline.generation_routes(mixed_guide)

        assert routes["pulmonary embolism"].module_id == "pulm"
        assert routes["thalassemia"].module_id == "heme"

    def test_single_module_guide_not_routed(self, guide):
        assert BatchSourcingPipeline.generation_routes(guide) == {}
        assert BatchSourcingPipeline.default_part(guide) is guide
