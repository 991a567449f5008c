"""
Unit tests for invariant checks and guide loading.
"""

import json

import pytest

from funnel.core.errors import InvariantViolation
from funnel.core.invariants import check_batch_disjoint, check_selection, check_universe, verify
from funnel.core.models import load_guide
from funnel.dedup.fingerprint import build_fingerprint_set


class TestChecks:
    """Tests for the check_* helpers."""

    def test_disjoint_batch_passes(self, make_question):
        check_batch_disjoint([make_question(), make_question()])

    def test_duplicate_in_batch_raises(self, make_question):
        question = make_question()

        with pytest.raises(InvariantViolation):
            check_batch_disjoint([question, question])

    def test_seen_question_raises(self, make_question):
        question = make_question()

        with pytest.raises(InvariantViolation):
            check_batch_disjoint([question], build_fingerprint_set([question]))

    def test_selection_over_request_raises(self):
        with pytest.raises(InvariantViolation):
            check_selection(["a", "b", "c"], ["a"], 2)

    def test_duplicate_focus_raises(self):
        with pytest.raises(InvariantViolation):
            check_selection(["a", "a"], ["a", "a"], 2)

    def test_unnormalized_universe_key_raises(self):
        with pytest.raises(InvariantViolation):
            check_universe({"Iron Deficiency": "Iron Deficiency"})

    def test_verify_logs_instead_of_raising(self, make_question):
        question = make_question()

        assert verify(check_batch_disjoint, [question, question]) is False
        assert verify(check_universe, {"anemia": "Anemia"}) is True


class TestLoadGuide:
    """Tests for load_guide."""

    def test_reads_payload(self, tmp_path, sample_guide_payload):
        path = tmp_path / "heme.json"
        path.write_text(json.dumps(sample_guide_payload), encoding="utf-8")

        guide = load_guide(path)

        assert guide.guide_hash == "guide-heme-01"
        assert guide.module_id == "heme"
        assert [c.label for c in guide.concepts] == ["Iron Deficiency Anemia", "Thalassemia", "Sickle Cell Disease"]
        assert guide.concepts[1].metadata == {"id": "heme-2"}

    def test_hash_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "cardio-week-2.json"
        path.write_text(json.dumps({"title": "Cardio", "concepts": ["Heart Failure"]}), encoding="utf-8")

        assert load_guide(path).guide_hash == "cardio-week-2"

    def test_non_object_rejected(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(ValueError):
            load_guide(path)

    def test_mixed_modules(self, tmp_path):
        payload = {
            "guideHash": "mixed-1",
            "moduleId": "mixed",
            "mixedModules": [
                {"guideHash": "g-heme", "moduleId": "heme", "content": "heme notes",
                 "concepts": [{"label": "Thalassemia", "id": "heme-1"}]},
                {"guideHash": "g-pulm", "moduleId": "pulm", "content": "pulm notes",
                 "concepts": ["Asthma"]},
                {"guideHash": "g-orphan", "concepts": ["Ignored"]},
            ],
        }
        path = tmp_path / "mixed.json"
        path.write_text(json.dumps(payload), encoding="utf-8")

        guide = load_guide(path)

        assert guide.is_mixed
        assert [p.module_id for p in guide.parts] == ["heme", "pulm"]
        assert [c.label for c in guide.concepts] == ["Thalassemia", "Asthma"]
        assert guide.seen_module == "mixed"

    def test_single_module_list_not_mixed(self, tmp_path):
        payload = {"modules": [{"guideHash": "g-heme", "moduleId": "heme", "concepts": ["Thalassemia"]}]}
        path = tmp_path / "one.json"
        path.write_text(json.dumps(payload), encoding="utf-8")

        guide = load_guide(path)

        assert not guide.is_mixed
        assert [c.label for c in guide.concepts] == ["Thalassemia"]
