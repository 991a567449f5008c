"""
Concept Universe Builder.

Builds the per-guide set of trackable concepts. Guide labels come first in
input order; concepts the learner has already been tested on stay selectable
even when the guide no longer emphasizes them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from loguru import logger

from funnel.concepts.normalizer import normalize_concept_key
from funnel.core.models import ConceptMasteryRecord, GuideConcept

MIN_KEY_LENGTH = 3


def _label_of(item: GuideConcept | tuple | str) -> str:
    if isinstance(item, GuideConcept):
        return item.label
    if isinstance(item, tuple):
        return str(item[0]) if item else ""
    return str(item or "")


def build_concept_universe(
    guide_concepts: Iterable[GuideConcept | tuple | str],
    existing_mastery: Mapping[str, ConceptMasteryRecord] | None = None,
    extra_concepts: Iterable[str] = (),
) -> dict[str, str]:
    """
    Build the ConceptKey -> display name mapping for one guide.

    Args:
        guide_concepts: GuideConcept items, (label, metadata) tuples or bare labels
        existing_mastery: The learner's mastery records keyed by ConceptKey
        extra_concepts: Additional caller-supplied labels

    Returns:
        Insertion-ordered dict; the first display form of a key wins
    """
    universe: dict[str, str] = {}

    def _add(label: str) -> None:
        display = label.strip()
        key = normalize_concept_key(display)
        if len(key) < MIN_KEY_LENGTH or key in universe:
            return
        universe[key] = display

    for item in guide_concepts:
        _add(_label_of(item))
    guide_size = len(universe)

    for label in extra_concepts:
        _add(str(label or ""))

    for key, record in (existing_mastery or {}).items():
        if len(key) < MIN_KEY_LENGTH or key in universe:
            continue
        universe[key] = record.display_name or key

    logger.debug(
        f"Concept universe: {guide_size} from guide, "
        f"{len(universe) - guide_size} carried over ({len(universe)} total)"
    )
    return universe


def module_hint(item_id: str, module_ids: Iterable[str]) -> str | None:
    """Module named by a guide item id prefix, e.g. "pulm-07" -> "pulm"."""
    for module_id in module_ids:
        if item_id.startswith(f"{module_id}-"):
            return module_id
    return None


def build_concept_module_map(
    guide_concepts: Iterable[GuideConcept],
    module_ids: Iterable[str],
    fallback: str | None = None,
) -> dict[str, str]:
    """
    Map each guide concept to the module it belongs to.

    The module comes from the concept's item id prefix; concepts without a
    recognizable prefix go to `fallback` (or stay unmapped when it is None).
    """
    module_ids = list(module_ids)
    mapping: dict[str, str] = {}
    for concept in guide_concepts:
        key = normalize_concept_key(concept.label)
        if not key:
            continue
        hint = module_hint(str(concept.metadata.get("id") or ""), module_ids)
        if hint:
            mapping[key] = hint
        elif fallback:
            mapping[key] = fallback
    return mapping
