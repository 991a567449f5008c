"""
Question Fingerprints.

Two variants per question:
- strict:  stem + options in presented order, whitespace collapsed
- lenient: lower-cased, punctuation stripped, option labels ("A)", "b.")
           removed, options sorted

A question counts as seen when ANY variant matches. Textually different but
equivalent questions may slip through (false negative); distinct questions
never collide beyond SHA-256 odds (no false positives).
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

from funnel.core.models import Question

# Boilerplate sentences the generator appends to image-backed stems
BOILERPLATE_SENTENCES = [
    re.compile(r"A representative histology image is provided below\.?", re.IGNORECASE),
    re.compile(r"A representative image is provided below\.?", re.IGNORECASE),
]

_WHITESPACE = re.compile(r"\s+")
_OPTION_LABEL = re.compile(r"^[A-E][).:\-\s]+", re.IGNORECASE)


def _strip_boilerplate(value: str) -> str:
    for pattern in BOILERPLATE_SENTENCES:
        value = pattern.sub("", value)
    return value


def _normalize_strict(value: str) -> str:
    return _WHITESPACE.sub(" ", _strip_boilerplate(value or "").strip())


def _normalize_lenient(value: str) -> str:
    text = _strip_boilerplate(value or "").casefold()
    # Letters and digits of any script are kept
    text = "".join(ch if ch.isalnum() else " " for ch in text)
    return _WHITESPACE.sub(" ", text).strip()


def strip_option_label(value: str) -> str:
    """Remove a leading choice label such as 'A)' or 'c.'."""
    return _OPTION_LABEL.sub("", str(value or "")).strip()


def _digest(kind: str, canonical: str) -> str:
    return f"{kind}:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def strict_fingerprint(question: Question) -> str | None:
    stem = _normalize_strict(question.text)
    options = "|".join(_normalize_strict(o) for o in question.options)
    if not stem and not options:
        return None
    return _digest("s", f"{stem}||{options}")


def lenient_fingerprint(question: Question) -> str | None:
    stem = _normalize_lenient(question.text)
    options = sorted(
        o for o in (_normalize_lenient(strip_option_label(opt)) for opt in question.options) if o
    )
    if not stem and not options:
        return None
    return _digest("l", f"{stem}||{'|'.join(options)}")


def fingerprint_variants(question: Question) -> set[str]:
    """
    All fingerprints for a question.

    Empty questions fall back to an id-based fingerprint so every question
    yields at least one entry.
    """
    variants = {fp for fp in (strict_fingerprint(question), lenient_fingerprint(question)) if fp}
    if not variants:
        variants.add(_digest("id", str(question.id)))
    return variants


def primary_fingerprint(question: Question) -> str:
    """The strict fingerprint (or the id fallback)."""
    return strict_fingerprint(question) or _digest("id", str(question.id))


def has_seen(question: Question, seen: set[str] | frozenset[str]) -> bool:
    """True if any fingerprint variant of the question is in the set."""
    return any(fp in seen for fp in fingerprint_variants(question))


def build_fingerprint_set(questions: Iterable[Question]) -> set[str]:
    """Union of all fingerprint variants of the given questions."""
    result: set[str] = set()
    for question in questions:
        result |= fingerprint_variants(question)
    return result


def filter_unseen(questions: Iterable[Question], seen: set[str]) -> list[Question]:
    """Questions with no variant in the seen set (input order kept)."""
    return [q for q in questions if not has_seen(q, seen)]


def filter_duplicate_questions(
    questions: Iterable[Question],
    existing: set[str] | None = None,
) -> tuple[list[Question], set[str]]:
    """
    Drop questions already in `existing` or duplicated within the input.

    Returns:
        (unique questions, existing fingerprints plus those of the kept questions)
    """
    fingerprints = set(existing or ())
    unique: list[Question] = []
    for question in questions:
        variants = fingerprint_variants(question)
        if variants & fingerprints:
            continue
        fingerprints |= variants
        unique.append(question)
    return unique, fingerprints
