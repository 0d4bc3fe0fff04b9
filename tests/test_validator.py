#!/usr/bin/env python3
"""
Tests for cross-validation across crawled sources.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from processing.fusion.records import AuthoritativeRecord, RawCandidateRecord
from processing.fusion.validator import FALLBACK_SOURCE, CrossValidator


validator = CrossValidator()


def _anchor(**fields):
    fields.setdefault("name", "Alpha Gym")
    fields.setdefault("address", "12 Main St")
    return AuthoritativeRecord(**fields)


def _source(tag, **fields):
    fields.setdefault("name", "Alpha Gym")
    fields.setdefault("address", "12 Main St")
    return RawCandidateRecord(source=tag, **fields)


def test_corroborated_phone_overrides_anchor():
    anchor = _anchor(phone="02-999-9999")
    results = [
        _source("naver", phone="02-111-2222"),
        _source("kakao", phone="02-111-2222"),
    ]
    validated = validator.validate(results, anchor)

    assert validated.values["phone"] == "02-111-2222"
    assert validated.stats.phone_matches == 2
    assert validated.source == "cross_validated_2_sources"
    # base 0.5 (anchor default) + 0.3 phone bonus
    assert validated.confidence == pytest.approx(0.8)


def test_uncorroborated_hours_go_to_supplementary():
    anchor = _anchor()
    results = [
        _source("naver", open_hour="06:00", confidence=0.8),
        _source("kakao", open_hour="07:00", confidence=0.8),
    ]
    validated = validator.validate(results, anchor)

    assert validated.values["open_hour"] is None
    assert validated.supplementary["open_hour"] == ["06:00", "07:00"]
    assert validated.stats.hours_matches == 0


def test_corroborated_value_keeps_minority_as_supplementary():
    results = [
        _source("a", open_hour="06:00"),
        _source("b", open_hour="06:00"),
        _source("c", open_hour="07:00"),
    ]
    validated = validator.validate(results, _anchor())
    assert validated.values["open_hour"] == "06:00"
    assert validated.supplementary["open_hour"] == ["07:00"]


def test_facilities_need_two_sources():
    results = [
        _source("a", facilities=["샤워실", "주차장"]),
        _source("b", facilities=["샤워실"]),
        _source("c", facilities=["사우나"]),
    ]
    validated = validator.validate(results, _anchor())
    assert validated.facilities == ["샤워실"]
    assert validated.supplementary["facilities"] == ["주차장", "사우나"]


def test_facility_repeated_in_one_source_counts_once():
    results = [
        _source("a", facilities=["주차장", "주차장"]),
        _source("b"),
    ]
    validated = validator.validate(results, _anchor())
    assert validated.facilities == []


def test_price_bonus_requires_two_matches():
    anchor = _anchor(confidence=0.3)
    agreeing = validator.validate([
        _source("a", membership_price="80,000원"),
        _source("b", membership_price="80,000원"),
    ], anchor)
    assert agreeing.price.final_price == "80,000원"
    assert agreeing.stats.price_matches == 2

    lone = validator.validate([
        _source("a", membership_price="80,000원"),
        _source("b"),
    ], anchor)
    assert lone.price.final_price == "80,000원"
    assert lone.stats.price_matches == 0
    assert agreeing.confidence > lone.confidence


def test_first_present_rating():
    results = [
        _source("a"),
        _source("b", rating=4.4),
        _source("c", rating=3.9),
    ]
    validated = validator.validate(results, _anchor())
    assert validated.values["rating"] == 4.4


def test_anchor_rating_kept():
    validated = validator.validate([_source("a", rating=4.4), _source("b", rating=4.4)], _anchor(rating=4.0))
    assert validated.values["rating"] == 4.0


def test_crawled_values_not_masked_by_anchor():
    validated = validator.validate(
        [
            _source("a", rating=4.4, website="b.com", phone="555-0002"),
            _source("b", rating=4.4, phone="555-0002", open_hour="06:00"),
        ],
        _anchor(rating=4.0, website="a.com", phone="555-0001"),
    )
    assert validated.values["rating"] == 4.0
    assert validated.values["website"] == "a.com"
    assert validated.crawled_values["rating"] == 4.4
    assert validated.crawled_values["website"] == "b.com"
    assert validated.crawled_values["phone"] == "555-0002"
    # One source is not enough to report an opening hour
    assert "open_hour" not in validated.crawled_values


def test_confidence_capped_unless_anchor_higher():
    results = [
        _source("a", phone="02-111-2222", open_hour="06:00", membership_price="80,000원", facilities=["샤워실"]),
        _source("b", phone="02-111-2222", open_hour="06:00", membership_price="80,000원", facilities=["샤워실"]),
    ]
    assert validator.validate(results, _anchor(confidence=0.5)).confidence == pytest.approx(0.9)
    assert validator.validate(results, _anchor(confidence=0.95)).confidence == pytest.approx(0.95)


def test_as_fields_includes_prices_and_facilities():
    results = [
        _source("a", membership_price="80,000원", facilities=["샤워실"]),
        _source("b", membership_price="80,000원", facilities=["샤워실"]),
    ]
    fields = validator.validate(results, _anchor()).as_fields()
    assert fields["membership_price"] == "80,000원"
    assert fields["facilities"] == ["샤워실"]


def test_fallback_on_empty_results():
    validated = validator.validate([], _anchor(phone="02-111-2222", confidence=0.8))
    assert validated.is_fallback
    assert validated.source == FALLBACK_SOURCE
    assert validated.confidence <= 0.1
    assert validated.values["phone"] == "02-111-2222"


def test_fallback_on_non_model_anchor():
    validated = validator.validate([_source("a")], {"name": "Alpha Gym", "phone": "02-111-2222"})
    assert validated.is_fallback
    assert validated.values["phone"] == "02-111-2222"

    validated = validator.validate([_source("a")], None)
    assert validated.is_fallback
    assert validated.values["phone"] is None


def test_fallback_drops_unserializable_values():
    circular = {}
    circular["self"] = circular
    validated = validator.fallback({"name": "Alpha Gym", "equipment": circular})
    assert validated.values["equipment"] is None
