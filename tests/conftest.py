"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import random
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from funnel.core.models import GuideConcept, GuideContext, Question, SourceType  # noqa: E402
from funnel.store.local_store import LocalStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (local stores only)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def local_store(tmp_path):
    """LocalStore backed by a throwaway SQLite file."""
    store = LocalStore(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def rng():
    """Seeded random source for reproducible selections."""
    return random.Random(1234)


@pytest.fixture
def make_question():
    """Factory for distinct multiple-choice questions."""
    counter = {"n": 0}

    def _make(
        concept: str = "Iron Deficiency Anemia",
        text: str | None = None,
        source_type: SourceType = SourceType.GENERATED,
        options: list[str] | None = None,
    ) -> Question:
        counter["n"] += 1
        n = counter["n"]
        return Question(
            id=f"q-{n}",
            text=text or f"Question {n} about {concept}: which finding is most likely?",
            options=options or [f"Finding {n}-{i}" for i in range(1, 5)],
            correct_answer=(options or [f"Finding {n}-1"])[0],
            concept_tags=[concept],
            source_type=source_type,
        )

    return _make


@pytest.fixture
def sample_guide():
    """Provide a sample hematology guide."""
    return GuideContext(
        guide_hash="guide-heme-01",
        title="Hematology Review",
        module_id="heme",
        concepts=[
            GuideConcept("Iron Deficiency Anemia"),
            GuideConcept("Thalassemia"),
            GuideConcept("Sickle Cell Disease"),
            GuideConcept("Hemophilia A"),
            GuideConcept("Von Willebrand Disease"),
        ],
        content="Microcytic anemias, hemoglobinopathies and bleeding disorders.",
    )


@pytest.fixture
def sample_guide_payload():
    """Provide the JSON form of a guide, as read by the CLI."""
    return {
        "guide_hash": "guide-heme-01",
        "title": "Hematology Review",
        "module_id": "heme",
        "concepts": [
            "Iron Deficiency Anemia",
            {"title": "Thalassemia", "id": "heme-2"},
            {"label": "Sickle Cell Disease"},
        ],
        "content": "Microcytic anemias and hemoglobinopathies.",
    }
