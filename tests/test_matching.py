#!/usr/bin/env python3
"""
Tests for similarity scoring and record matching.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from processing.fusion.matchers import MatchType, RecordMatcher
from processing.fusion.records import AuthoritativeRecord, RawCandidateRecord
from processing.fusion.similarity import (
    levenshtein,
    phone_similarity,
    string_similarity,
)


# =============================================================================
# Similarity
# =============================================================================

def test_string_similarity_normalizes_case_and_whitespace():
    assert string_similarity("Alpha Gym", "alpha  gym") == 1.0


def test_string_similarity_containment():
    assert string_similarity("Alpha Gym", "Alpha Gym Gangnam") == 0.8
    assert string_similarity("Alpha Gym Gangnam", "Alpha Gym") == 0.8


def test_string_similarity_edit_distance():
    assert string_similarity("abc", "abd") == pytest.approx(1 - 1 / 3)
    assert string_similarity("abcd", "wxyz") == 0.0


def test_string_similarity_is_total():
    assert string_similarity(None, "abc") == 0.0
    assert string_similarity("", "") == 0.0
    assert string_similarity(12, 12) == 0.0


def test_string_similarity_symmetric():
    pairs = [("강남 헬스", "강남헬스클럽"), ("Iron Gym", "Iron Gym 2"), ("abc", "xbz")]
    for a, b in pairs:
        assert string_similarity(a, b) == string_similarity(b, a)


def test_phone_similarity():
    assert phone_similarity("02-123-4567", "021234567") == 1.0
    assert phone_similarity("123-4567", "02-123-4567") == 0.9
    assert phone_similarity("02-123-4567", "02-765-4321") == 0.0
    assert phone_similarity("", "02-123-4567") == 0.0
    assert phone_similarity(None, None) == 0.0


def test_levenshtein():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein(None, "ab") == 2


# =============================================================================
# RecordMatcher
# =============================================================================

def _anchor(**fields):
    return AuthoritativeRecord(**fields)


def _candidate(**fields):
    fields.setdefault("confidence", 0.9)
    return RawCandidateRecord(**fields)


def test_identical_records_score_one():
    matcher = RecordMatcher()
    a = _anchor(name="Alpha Gym", address="12 Main St", phone="555-0001")
    c = _candidate(name="Alpha Gym", address="12 Main St", phone="555-0001")
    assert matcher.score(c, a) == 1.0

    result = matcher.match(c, [a])
    assert result is not None
    assert result.is_match
    assert result.match_type == MatchType.EXACT
    assert result.matched_on == ["name", "address", "phone"]


def test_disjoint_records_score_zero():
    matcher = RecordMatcher()
    a = _anchor(name="aaaa", address="bbbb", phone="111")
    c = _candidate(name="xyz", address="qrs", phone="999")
    assert matcher.score(c, a) == 0.0
    assert matcher.match(c, [a]) is None


def test_missing_phone_renormalizes_weights():
    matcher = RecordMatcher()
    a = _anchor(name="Alpha Gym", address="12 Main St", phone="555-0001")
    c = _candidate(name="Alpha Gym", address="12 Main St")
    assert matcher.score(c, a) == 1.0


def test_threshold_is_exclusive():
    matcher = RecordMatcher(threshold=1.0)
    a = _anchor(name="Alpha Gym", address="12 Main St")
    c = _candidate(name="Alpha Gym", address="12 Main St")
    assert matcher.match(c, [a]) is None


def test_phone_mismatch_blocks_match():
    matcher = RecordMatcher()
    a = _anchor(name="Alpha Gym", address="12 Main St", phone="555-0001")
    c = _candidate(name="Alpha Gym", address="12 Main St", phone="555-9999")
    assert matcher.score(c, a) == pytest.approx(0.7)
    assert matcher.match(c, [a]) is None


def test_best_match_wins_and_ties_keep_earliest():
    matcher = RecordMatcher()
    pool = [
        _anchor(name="Beta Fitness", address="99 Side Rd"),
        _anchor(name="Alpha Gym", address="12 Main St", id=1),
        _anchor(name="Alpha Gym", address="12 Main St", id=2),
    ]
    c = _candidate(name="Alpha Gym", address="12 Main St")
    result = matcher.match(c, pool)
    assert result.pool_index == 1
    assert result.authoritative.id == 1


def test_fuzzy_match_type():
    matcher = RecordMatcher()
    a = _anchor(name="Alpha Gym", address="12 Main St")
    c = _candidate(name="Alpha Gym Main", address="12 Main St")
    result = matcher.match(c, [a])
    assert result is not None
    assert result.match_type == MatchType.FUZZY
    assert result.score == pytest.approx((0.4 * 0.8 + 0.3 * 1.0) / 0.7)


def test_empty_pool():
    assert RecordMatcher().match(_candidate(name="Alpha Gym", address="12 Main St"), []) is None
