"""
Concept keys and the per-guide concept universe.
"""

from .normalizer import GENERAL_CONCEPT, concept_keys_for_tags, normalize_concept_key, tokenize
from .universe import build_concept_module_map, build_concept_universe, module_hint

__all__ = [
    "GENERAL_CONCEPT",
    "normalize_concept_key",
    "tokenize",
    "concept_keys_for_tags",
    "build_concept_universe",
    "build_concept_module_map",
    "module_hint",
]
