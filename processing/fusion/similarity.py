"""
String and phone similarity used for record matching.

All functions are pure and total: non-string input is treated as empty and
scores 0.0.
"""

import re
from typing import Any

from rapidfuzz.distance import Levenshtein


CONTAINMENT_SCORE = 0.8
PHONE_CONTAINMENT_SCORE = 0.9


def normalize_text(value: Any) -> str:
    """Lowercase and drop all whitespace."""
    if not isinstance(value, str):
        return ""
    return re.sub(r"\s+", "", value).lower()


def digits_only(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r"\D", "", value)


def levenshtein(a: Any, b: Any) -> int:
    """Edit distance between two strings."""
    return Levenshtein.distance(a if isinstance(a, str) else "", b if isinstance(b, str) else "")


def string_similarity(a: Any, b: Any) -> float:
    """
    Similarity of two names or addresses in [0, 1].

    Exact match after normalization scores 1.0, containment either way 0.8,
    otherwise 1 - edit_distance / longer_length.
    """
    s1 = normalize_text(a)
    s2 = normalize_text(b)
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return CONTAINMENT_SCORE

    max_len = max(len(s1), len(s2))
    return 1.0 - Levenshtein.distance(s1, s2) / max_len


def phone_similarity(a: Any, b: Any) -> float:
    """Similarity of two phone numbers, compared on digits only."""
    d1 = digits_only(a)
    d2 = digits_only(b)
    if not d1 or not d2:
        return 0.0
    if d1 == d2:
        return 1.0
    if d1 in d2 or d2 in d1:
        return PHONE_CONTAINMENT_SCORE
    return 0.0


class SimilarityScorer:
    """Injectable bundle of the similarity functions."""

    def string(self, a: Any, b: Any) -> float:
        return string_similarity(a, b)

    def phone(self, a: Any, b: Any) -> float:
        return phone_similarity(a, b)
