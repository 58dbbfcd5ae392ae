"""Lexical similarity between legacy field names and canonical fields."""

from __future__ import annotations

import re
from typing import Iterable

from .canonical_schema import CanonicalField

_TOKEN_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

# Tokens that carry no meaning for matching
STOPWORDS = frozenset({"of", "the", "and", "a", "to", "for", "in"})

# Legacy vocabulary -> canonical vocabulary
TOKEN_SYNONYMS = {
    "patient": "resident",
    "client": "resident",
    "su": "resident",
    "customer": "resident",
    "ref": "id",
    "identifier": "id",
    "no": "number",
    "num": "number",
    "nbr": "number",
    "tel": "phone",
    "telephone": "phone",
    "mobile": "phone",
    "forename": "first",
    "given": "first",
    "surname": "last",
    "family": "last",
    "medication": "medications",
    "meds": "medications",
    "drugs": "medications",
    "allergy": "allergies",
    "admitted": "admission",
    "admit": "admission",
    "birthdate": "birth",
    "postal": "post",
    "dependency": "care",
    "nok": "kin",
}


def tokenize(name: str) -> list[str]:
    """Split a field name into lowercase tokens.

    Handles snake_case, kebab-case, spaces and camelCase (``PatientID`` ->
    ``["patient", "id"]``).
    """
    tokens = [t.lower() for t in _TOKEN_PATTERN.findall(name or "")]
    return [t for t in tokens if t not in STOPWORDS]


def source_key(name: str) -> str:
    """Normalized key for a source field name (``PatientID`` -> ``patient_id``)."""
    return "_".join(tokenize(name)) or (name or "").strip().lower()


def canonical_tokens(name: str, synonyms: dict[str, str] | None = None) -> tuple[str, ...]:
    table = TOKEN_SYNONYMS if synonyms is None else synonyms
    return tuple(table.get(t, t) for t in tokenize(name))


def token_overlap(left: Iterable[str], right: Iterable[str]) -> float:
    """Dice coefficient over token sets."""
    a, b = set(left), set(right)
    if not a or not b:
        return 0.0
    return 2 * len(a & b) / (len(a) + len(b))


def name_similarity(
    source_field: str,
    target: CanonicalField,
    learned_aliases: Iterable[str] = (),
    synonyms: dict[str, str] | None = None,
) -> float:
    """Score how well a source field name matches a canonical field.

    An exact match on the canonical name, an alias or a learned alias (after
    synonym normalization) scores 1.0; otherwise the best token overlap
    against any of them.
    """
    src = canonical_tokens(source_field, synonyms)
    if not src:
        return 0.0
    best = 0.0
    for candidate in (target.name, *target.aliases, *learned_aliases):
        cand = canonical_tokens(candidate, synonyms)
        if cand == src:
            return 1.0
        best = max(best, token_overlap(src, cand))
    return best
