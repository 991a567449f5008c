"""
Concept Key Normalizer.

Turns free-text concept labels ("Iron-Deficiency Anemia!", "iron-deficiency
anemia") into one comparable ConceptKey. The function is total: characters
outside letters, digits, whitespace and hyphens are dropped, never rejected.
"""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")

# Fallback key for questions that carry no concept tags
GENERAL_CONCEPT = "general"

MIN_TOKEN_LENGTH = 3


def _keep(ch: str) -> bool:
    return ch.isalnum() or ch.isspace() or ch == "-"


def normalize_concept_key(label: str | None) -> str:
    """
    Canonicalize a concept label.

    Steps: Unicode NFKC, case-fold, drop disallowed characters, collapse
    whitespace, trim. Idempotent: normalize(normalize(x)) == normalize(x).

    Args:
        label: Raw label (None is treated as empty)

    Returns:
        The ConceptKey (possibly empty)
    """
    text = unicodedata.normalize("NFKC", str(label or ""))
    text = unicodedata.normalize("NFKC", text.casefold())
    text = "".join(ch for ch in text if _keep(ch))
    return _WHITESPACE.sub(" ", text).strip()


def tokenize(label: str | None) -> list[str]:
    """Split a label into normalized tokens, ignoring short words."""
    return [t for t in normalize_concept_key(label).split(" ") if len(t) >= MIN_TOKEN_LENGTH]


def concept_keys_for_tags(tags: list[str] | None) -> list[tuple[str, str]]:
    """
    Resolve a question's concept tags to (key, display) pairs.

    Untagged questions fall back to the General concept. Duplicate keys
    are collapsed, keeping the first display form.
    """
    pairs: list[tuple[str, str]] = []
    seen: set[str] = set()
    for raw in tags or []:
        display = str(raw or "").strip()
        key = normalize_concept_key(display)
        if not key or key in seen:
            continue
        seen.add(key)
        pairs.append((key, display))
    if not pairs:
        pairs.append((GENERAL_CONCEPT, "General"))
    return pairs
