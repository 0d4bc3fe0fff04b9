#!/usr/bin/env python3
"""
Tests for the unified merger.
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from processing.fusion.extractors import FieldExtractor
from processing.fusion.merger import (
    MERGE_FALLBACK_SOURCE,
    MergeInputError,
    MergerConfig,
    UnifiedMerger,
    join_sources,
    values_differ,
)


def make_merger(**overrides) -> UnifiedMerger:
    return UnifiedMerger(config=MergerConfig(**overrides))


ALPHA = {"name": "Alpha Gym", "address": "12 Main St", "phone": "555-0001"}


# =============================================================================
# Precedence and conflicts
# =============================================================================

def test_crawl_fills_gaps_without_conflicts():
    crawled = {
        "name": "Alpha Gym",
        "address": "12 Main St",
        "phone": "555-0001",
        "membershipPrice": "80,000원",
        "rating": 4.5,
    }
    result = make_merger().merge([ALPHA], [crawled])

    assert len(result.merged) == 1
    record = result.merged[0]
    assert record.membership_price == "80,000원"
    assert record.rating == 4.5
    assert record.confidence > 0.5
    assert record.phone == "555-0001"
    assert result.conflicts == []
    assert result.statistics.matched_pairs == 1


def test_authoritative_wins_and_conflict_logged():
    anchor = {**ALPHA, "rating": 4.0, "website": "https://alpha.example"}
    crawled = {
        **ALPHA,
        "rating": 4.8,
        "website": "https://alpha-gym.example",
        "openHour": "06:00",
        "source": "naver",
        "confidence": 0.9,
    }
    result = make_merger().merge([anchor], [crawled])
    record = result.merged[0]

    assert record.rating == 4.0
    assert record.website == "https://alpha.example"
    assert record.open_hour == "06:00"

    fields = {c.field: c for c in result.conflicts}
    assert set(fields) == {"rating", "website"}
    assert fields["rating"].authoritative_value == 4.0
    assert fields["rating"].crawled_value == 4.8
    assert fields["rating"].resolution == "authoritative"
    assert fields["rating"].entity_key == "alphagym-12mainst"


def test_conflicts_logged_when_several_sources_agree():
    anchor = {**ALPHA, "rating": 4.0, "website": "a.com"}
    crawled = [
        {**ALPHA, "rating": 4.8, "website": "b.com", "source": "naver", "confidence": 0.8},
        {**ALPHA, "name": "Alpha Gym Main", "rating": 4.8, "website": "b.com", "source": "kakao", "confidence": 0.8},
    ]
    result = make_merger().merge([anchor], crawled)

    assert result.statistics.matched_pairs == 2
    record = result.merged[0]
    assert record.rating == 4.0
    assert record.website == "a.com"

    fields = {c.field: c for c in result.conflicts}
    assert set(fields) == {"rating", "website"}
    assert fields["rating"].crawled_value == 4.8
    assert fields["website"].crawled_value == "b.com"


def test_conflict_fields_same_for_one_or_two_sources():
    anchor = {**ALPHA, "rating": 4.0, "membershipPrice": "70,000원"}
    candidate = {**ALPHA, "rating": 4.5, "membershipPrice": "90,000원", "confidence": 0.8}

    single = make_merger().merge([anchor], [candidate])
    double = make_merger().merge(
        [anchor], [candidate, {**candidate, "name": "Alpha Gym Main"}]
    )

    assert {c.field for c in single.conflicts} == {"rating", "membershipPrice"}
    assert {c.field for c in double.conflicts} == {"rating", "membershipPrice"}


def test_single_source_disagreement_not_promoted():
    crawled = [
        {"name": "Alpha Gym", "address": "12 Main St", "openHour": "06:00", "source": "naver", "confidence": 0.8},
        {"name": "Alpha Gym Main", "address": "12 Main St", "openHour": "07:00", "source": "kakao", "confidence": 0.8},
    ]
    result = make_merger().merge([{"name": "Alpha Gym", "address": "12 Main St"}], crawled)

    assert len(result.merged) == 1
    record = result.merged[0]
    assert record.open_hour is None
    assert record.supplementary == {"open_hour": ["06:00", "07:00"]}
    assert result.conflicts == []
    assert record.source == "registry + naver + kakao"


def test_corroborated_sources_raise_confidence():
    crawled = [
        {"name": "Alpha Gym", "address": "12 Main St", "phone": "555-0001", "openHour": "06:00"},
        {"name": "Alpha Gym Main", "address": "12 Main St", "phone": "555-0001", "openHour": "06:00"},
    ]
    result = make_merger().merge([ALPHA], crawled)
    record = result.merged[0]

    assert record.open_hour == "06:00"
    assert record.confidence == pytest.approx(0.9)
    assert result.statistics.successfully_merged == 1


def test_facilities_and_services_union():
    anchor = {**ALPHA, "facilities": ["샤워실"], "services": ["PT"]}
    crawled = {**ALPHA, "facilities": ["주차장", "샤워실"], "services": ["GX"], "confidence": 0.9}
    record = make_merger().merge([anchor], [crawled]).merged[0]
    assert record.facilities == ["샤워실", "주차장"]
    assert record.services == ["PT", "GX"]


def test_price_falls_back_to_resolution():
    crawled = {**ALPHA, "text": "5만원부터 등록 가능", "confidence": 0.9}
    record = make_merger().merge([ALPHA], [crawled]).merged[0]
    assert record.minimum_price == "5만원부터"
    assert record.price == "5만원부터"


def test_price_sentinel_when_nothing_known():
    crawled = {**ALPHA, "confidence": 0.9}
    record = make_merger().merge([ALPHA], [crawled]).merged[0]
    assert record.price == "방문후 확인"


def test_anchor_flags_kept():
    anchor = {**ALPHA, "hasParking": False}
    crawled = {**ALPHA, "hasParking": True, "hasShower": True, "confidence": 0.9}
    record = make_merger().merge([anchor], [crawled]).merged[0]
    assert record.has_parking is False
    assert record.has_shower is True


# =============================================================================
# Passthrough, new entities, ordering
# =============================================================================

def test_merge_with_no_crawled_is_idempotent():
    authoritative = [
        {"name": "Alpha Gym", "address": "12 Main St", "phone": "555-0001", "siteCode": "A-1"},
        {"name": "Beta Yoga", "address": "9 Side Rd", "confidence": 0.9, "source": "public_api"},
    ]
    first = make_merger().merge(authoritative, [])
    first_wire = [r.to_wire() for r in first.merged]

    for original, merged in zip(authoritative, first_wire):
        for key, value in original.items():
            assert merged[key] == value
    assert first_wire[0]["confidence"] == 0.5
    assert first_wire[0]["source"] == "registry"
    assert first_wire[1]["serviceType"] == "yoga"
    assert first.statistics.fallback_used == 2

    second = make_merger().merge(first_wire, [])
    second_wire = [r.to_wire() for r in second.merged]
    for a, b in zip(first_wire, second_wire):
        a.pop("updatedAt")
        b.pop("updatedAt")
        assert a == b


def test_unmatched_crawled_become_new_entities():
    crawled = {"name": "Gamma CrossFit", "address": "1 Far Ave", "source": "naver", "confidence": 0.9, "text": "후기 12"}
    result = make_merger().merge([ALPHA], [crawled])

    assert len(result.merged) == 2
    new = result.merged[1]
    assert new.source == "naver"
    assert new.service_type == "crossfit"
    assert new.review_count == 12
    assert new.confidence == 0.9
    assert "text" not in new.to_wire()
    assert result.statistics.successfully_merged == 1


def test_output_order():
    authoritative = [
        {"name": "Unmatched One", "address": "1 A St"},
        {"name": "Alpha Gym", "address": "12 Main St"},
    ]
    crawled = [
        {"name": "Brand New Gym", "address": "77 New Rd", "confidence": 0.9},
        {"name": "Alpha Gym", "address": "12 Main St", "confidence": 0.9},
    ]
    result = make_merger().merge(authoritative, crawled)
    assert [r.name for r in result.merged] == ["Alpha Gym", "Unmatched One", "Brand New Gym"]


def test_source_and_service_type():
    anchor = {"name": "Iron PT Studio", "address": "3 Gym Rd", "source": "public_api"}
    crawled = {"name": "Iron PT Studio", "address": "3 Gym Rd", "source": "naver", "confidence": 0.9}
    record = make_merger().merge([anchor], [crawled]).merged[0]
    assert record.source == "public_api + naver"
    assert record.service_type == "pt"


# =============================================================================
# Input handling
# =============================================================================

def test_non_list_input_raises():
    merger = make_merger()
    with pytest.raises(MergeInputError):
        merger.merge("not a list", [])
    with pytest.raises(ValueError):
        merger.merge([], {"name": "Alpha Gym"})


def test_invalid_items_skipped():
    result = make_merger().merge(
        [ALPHA, {"name": ""}, 42],
        [{"address": "no name"}, None],
    )
    assert len(result.merged) == 1
    assert result.statistics.invalid_skipped == 4


def test_low_confidence_crawled_discarded():
    crawled = {"name": "Delta Gym", "address": "4 Low Rd", "confidence": 0.1}
    result = make_merger(min_search_confidence=0.3).merge([], [crawled])
    assert result.merged == []
    assert result.statistics.low_confidence_discarded == 1


def test_duplicates_removed():
    authoritative = [ALPHA, {"name": "alpha gym", "address": "12  Main St", "phone": "999"}]
    crawled = [
        {"name": "Zeta Gym", "address": "8 Z St", "confidence": 0.9},
        {"name": "Zeta  Gym", "address": "8 z st", "confidence": 0.9},
    ]
    result = make_merger().merge(authoritative, crawled)

    assert result.statistics.duplicates_removed == 2
    assert len(result.merged) == 2
    assert result.merged[0].phone == "555-0001"


def test_caps_truncate():
    authoritative = [{"name": f"Gym {i}", "address": f"{i} Main St"} for i in range(5)]
    result = make_merger(max_authoritative=3).merge(authoritative, [])
    assert len(result.merged) == 3
    assert result.statistics.truncated

    result = make_merger(max_result=2).merge(authoritative, [])
    assert len(result.merged) == 2
    assert result.statistics.truncated


# =============================================================================
# Failure isolation
# =============================================================================

class ExplodingExtractor(FieldExtractor):
    """Fails price resolution for one gym."""

    def resolve_prices(self, results):
        results = list(results)
        if any(r.name == "Broken Gym" for r in results):
            raise RuntimeError("resolution blew up")
        return super().resolve_prices(results)


def test_pair_failure_becomes_fallback():
    authoritative = [
        {"name": "Broken Gym", "address": "1 Bad St", "confidence": 0.4},
        ALPHA,
    ]
    crawled = [
        {"name": "Broken Gym", "address": "1 Bad St", "confidence": 0.8},
        {**ALPHA, "confidence": 0.9},
    ]
    merger = UnifiedMerger(config=MergerConfig(), extractor=ExplodingExtractor())
    result = merger.merge(authoritative, crawled)

    assert len(result.merged) == 2
    broken, alpha = result.merged
    assert broken.source == MERGE_FALLBACK_SOURCE
    assert broken.confidence == 0.8
    assert alpha.source == "registry + crawled"
    assert result.statistics.fallback_used == 1
    assert result.statistics.successfully_merged == 1


def test_unserializable_extra_degrades_to_fallback():
    circular = {}
    circular["self"] = circular
    anchor = {**ALPHA, "meta": circular}
    crawled = {**ALPHA, "confidence": 0.9}
    result = make_merger().merge([anchor], [crawled])

    record = result.merged[0]
    assert record.source == MERGE_FALLBACK_SOURCE
    assert "meta" not in record.to_wire()
    json.dumps(result.to_dict())


# =============================================================================
# Output
# =============================================================================

def test_result_is_json_serializable():
    crawled = {**ALPHA, "rating": 4.1, "confidence": 0.9}
    result = make_merger().merge([ALPHA, {"name": "Beta", "address": "B"}], [crawled])
    payload = json.loads(json.dumps(result.to_dict(), ensure_ascii=False))

    assert set(payload) == {"merged", "statistics", "conflicts"}
    assert set(payload["statistics"]) >= {
        "totalProcessed",
        "successfullyMerged",
        "fallbackUsed",
        "duplicatesRemoved",
        "qualityScore",
        "processingTimeMs",
    }
    assert payload["statistics"]["totalProcessed"] == 2
    assert 0.0 <= payload["statistics"]["qualityScore"] <= 1.0


def test_every_output_record_has_name_and_address():
    crawled = [
        {"name": "Alpha Gym", "address": "12 Main St", "confidence": 0.9},
        {"name": "Other", "address": "Elsewhere", "confidence": 0.9},
    ]
    result = make_merger().merge([ALPHA, {"name": "Beta", "address": "B"}], crawled)
    for record in result.merged:
        assert record.name and record.address
        assert 0.0 <= record.confidence <= 1.0


def test_empty_merge():
    result = make_merger().merge([], [])
    assert result.merged == []
    assert result.statistics.total_processed == 0
    assert result.statistics.quality_score == 0.0


def test_merge_async_inside_event_loop():
    async def run():
        return await make_merger().merge_async([ALPHA], [])

    result = asyncio.run(run())
    assert result.merged[0].name == "Alpha Gym"


def test_helpers():
    assert join_sources("registry", "naver + kakao", "naver") == "registry + naver + kakao"
    assert values_differ("a", "b")
    assert not values_differ(" a", "a")
    assert not values_differ(4, 4.0)
    assert not values_differ(None, "x")
    assert not values_differ("", "x")
