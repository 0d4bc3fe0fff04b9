"""
Unified Merger

Fuses authoritative registry records with crawled candidate records into one
deduplicated, confidence-scored gym collection.

Precedence when both sides have a value:
- name, address, phone and other registry fields: authoritative wins
- crawl-priority fields (rating, hours, prices, social links, flags): first
  present, authoritative first, so a crawl only fills gaps
- facilities and services: order-preserving union
Every disagreement between two non-empty values is logged as a Conflict.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from pydantic.alias_generators import to_camel

from config.logging import logger
from config.settings import settings
from processing.fusion.batching import BatchOrchestrator, ConcurrencyLimiter
from processing.fusion.extractors import FieldExtractor, PriceResolution
from processing.fusion.matchers import RecordMatcher
from processing.fusion.records import (
    DEFAULT_CONFIDENCE,
    DEFAULT_REGISTRY_SOURCE,
    FLAG_FIELDS,
    LIST_FIELDS,
    PRICE_FIELDS,
    AuthoritativeRecord,
    Conflict,
    GymFields,
    MergedRecord,
    MergeResult,
    MergeStatistics,
    RawCandidateRecord,
    derive_service_type,
    is_empty,
    is_json_safe,
    parse_records,
    utc_now_iso,
)
from processing.fusion.validator import CrossValidator


MERGE_FALLBACK_SOURCE = "merge_fallback"
SOURCE_SEPARATOR = " + "

CRAWL_PRIORITY_FIELDS = (
    "rating",
    "review_count",
    "open_hour",
    "close_hour",
    *PRICE_FIELDS,
    "discount_info",
    "website",
    "instagram",
    "facebook",
    *FLAG_FIELDS,
    "equipment",
)

CONFLICT_FIELDS = (
    "name",
    "address",
    "phone",
    "rating",
    "review_count",
    "open_hour",
    "close_hour",
    "price",
    "membership_price",
    "pt_price",
    "gx_price",
    "day_pass_price",
    "website",
    "instagram",
    "facebook",
)

QUALITY_WEIGHTS = (
    ("name", 0.2),
    ("address", 0.2),
    ("phone", 0.15),
    ("rating", 0.1),
    ("review_count", 0.1),
)
CONFIDENCE_QUALITY_WEIGHT = 0.1


class MergeInputError(ValueError):
    """An input collection is not a list of records."""


class MergeInvariantError(RuntimeError):
    """A merged record could not be made serializable, even as a fallback."""


@dataclass
class MergerConfig:
    """Configuration for the merge run."""
    # Minimum match score (exclusive) to pair a candidate with a registry record
    duplicate_threshold: float = 0.8

    # Merged pairs at or above this confidence count as successful
    quality_threshold: float = 0.7

    # Crawled records below this confidence are dropped before matching
    min_search_confidence: float = 0.3

    # Per-pair merge scheduling
    merge_batch_size: int = 10
    merge_concurrency: int = 3
    merge_delay_ms: int = 0

    # Safety ceilings
    max_authoritative: int = 30000
    max_crawled: int = 20000
    max_result: int = 50000

    @classmethod
    def from_settings(cls) -> "MergerConfig":
        return cls(
            duplicate_threshold=settings.DUPLICATE_THRESHOLD,
            quality_threshold=settings.QUALITY_THRESHOLD,
            min_search_confidence=settings.MIN_SEARCH_CONFIDENCE,
            merge_batch_size=settings.MERGE_BATCH_SIZE,
            merge_concurrency=settings.MAX_CONCURRENT_REQUESTS,
            max_authoritative=settings.MAX_AUTHORITATIVE_RECORDS,
            max_crawled=settings.MAX_CRAWLED_RECORDS,
            max_result=settings.MAX_RESULT_RECORDS,
        )


def join_sources(*tags: Optional[str]) -> str:
    """Join distinct source tags, keeping first-seen order."""
    parts = []
    for tag in tags:
        for part in (tag or "").split(SOURCE_SEPARATOR):
            part = part.strip()
            if part and part not in parts:
                parts.append(part)
    return SOURCE_SEPARATOR.join(parts)


def values_differ(a: Any, b: Any) -> bool:
    """True when both values are present and not equal."""
    if is_empty(a) or is_empty(b):
        return False
    if isinstance(a, str) and isinstance(b, str):
        return a.strip() != b.strip()
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return float(a) != float(b)
    return a != b


def union_lists(*lists: Optional[list[Any]]) -> Optional[list[Any]]:
    merged = []
    for values in lists:
        for value in values or []:
            if value not in merged:
                merged.append(value)
    return merged or None


def dedupe_records(records: Sequence[GymFields]) -> tuple[list[GymFields], int]:
    """Drop records whose name-address key was already seen. Keeps first."""
    seen = set()
    unique = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        unique.append(record)
    return unique, len(records) - len(unique)


def record_quality(record: MergedRecord) -> float:
    score = 0.0
    factors = 0.0
    for name, weight in QUALITY_WEIGHTS:
        if getattr(record, name, None):
            score += weight
            factors += weight
    if record.confidence:
        score += record.confidence * CONFIDENCE_QUALITY_WEIGHT
        factors += CONFIDENCE_QUALITY_WEIGHT
    return score / factors if factors else 0.0


def quality_score(records: Sequence[MergedRecord]) -> float:
    """Mean weighted completeness of the output records."""
    if not records:
        return 0.0
    return sum(record_quality(r) for r in records) / len(records)


def _finalize(data: dict[str, Any]) -> MergedRecord:
    record = MergedRecord.model_validate(data)
    # Raises on anything that cannot go to JSON (circular references included)
    record.model_dump_json(by_alias=True)
    # NaN and Infinity riding in extras
    json.dumps(record.to_wire(), allow_nan=False)
    return record


def _safe_payload(record: GymFields) -> dict[str, Any]:
    """Declared fields plus whichever extras are JSON-safe."""
    data = {k: v for k, v in record.field_values().items() if is_json_safe(v)}
    for key, value in (record.model_extra or {}).items():
        if is_json_safe(value):
            data[key] = value
    return data


class UnifiedMerger:
    """
    Merges registry and crawled gym records.

    Usage:
        merger = UnifiedMerger()
        result = merger.merge(registry_records, crawled_records)
        result.statistics.log_summary()
        payload = result.to_dict()
    """

    def __init__(
        self,
        config: Optional[MergerConfig] = None,
        extractor: Optional[FieldExtractor] = None,
        matcher: Optional[RecordMatcher] = None,
        validator: Optional[CrossValidator] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
    ):
        self.config = config or MergerConfig.from_settings()
        self.extractor = extractor or FieldExtractor()
        self.matcher = matcher or RecordMatcher(threshold=self.config.duplicate_threshold)
        self.validator = validator or CrossValidator(self.extractor)
        self.orchestrator = orchestrator or BatchOrchestrator(
            batch_size=self.config.merge_batch_size,
            inter_batch_delay_ms=self.config.merge_delay_ms,
            limiter=ConcurrencyLimiter(self.config.merge_concurrency),
        )

    def merge(self, authoritative: Any, crawled: Any) -> MergeResult:
        """Synchronous entry point. Use merge_async() inside a running loop."""
        return asyncio.run(self.merge_async(authoritative, crawled))

    async def merge_async(self, authoritative: Any, crawled: Any) -> MergeResult:
        """
        Merge authoritative and crawled records.

        Args:
            authoritative: List of registry records (dicts or AuthoritativeRecord)
            crawled: List of crawled records (dicts or RawCandidateRecord)

        Returns:
            MergeResult with merged records, statistics and conflicts

        Raises:
            MergeInputError: If either input is not a list
            MergeInvariantError: If a fallback record cannot be serialized
        """
        start = time.perf_counter()
        self._check_container(authoritative, "authoritative")
        self._check_container(crawled, "crawled")

        stats = MergeStatistics()
        now = utc_now_iso()

        logger.info("=" * 60)
        logger.info("UNIFIED MERGE")
        logger.info("=" * 60)
        logger.info(f"Authoritative records: {len(authoritative)}")
        logger.info(f"Crawled records: {len(crawled)}")

        anchors, skipped_anchors = parse_records(authoritative, "authoritative")
        candidates, skipped_candidates = parse_records(crawled, "candidate")
        stats.invalid_skipped = skipped_anchors + skipped_candidates

        kept = [c for c in candidates if c.extraction_confidence >= self.config.min_search_confidence]
        stats.low_confidence_discarded = len(candidates) - len(kept)
        if stats.low_confidence_discarded:
            logger.info(
                f"Discarded {stats.low_confidence_discarded} crawled records below "
                f"confidence {self.config.min_search_confidence}"
            )

        anchors, dropped_anchors = dedupe_records(anchors)
        candidates, dropped_candidates = dedupe_records(kept)
        stats.duplicates_removed = dropped_anchors + dropped_candidates

        anchors = self._cap(anchors, self.config.max_authoritative, "authoritative", stats)
        candidates = self._cap(candidates, self.config.max_crawled, "crawled", stats)

        # Candidate-centric matching, grouped per registry record. A crawled
        # record enriches at most one registry record; several crawled records
        # may land on the same one and are then cross-validated together.
        groups: dict[int, list[RawCandidateRecord]] = {}
        unmatched_candidates = []
        for candidate in candidates:
            match = self.matcher.match(candidate, anchors)
            if match is None:
                unmatched_candidates.append(candidate)
                continue
            logger.debug(f"Matched {candidate.name} -> {match}")
            groups.setdefault(match.pool_index, []).append(candidate)
        stats.matched_pairs = sum(len(group) for group in groups.values())
        logger.info(
            f"Matched {stats.matched_pairs} crawled records to {len(groups)} registry records"
        )

        work = [(anchors[index], groups[index]) for index in sorted(groups)]
        report = await self.orchestrator.process_batches(
            work, lambda item: self.merge_group(item[0], item[1], now)
        )

        merged: list[MergedRecord] = []
        conflicts: list[Conflict] = []

        for outcome in report.outcomes:
            anchor, group = outcome.item
            if outcome.ok:
                record, pair_conflicts = outcome.value
                conflicts.extend(pair_conflicts)
                if record.confidence >= self.config.quality_threshold:
                    stats.successfully_merged += 1
                else:
                    stats.fallback_used += 1
            else:
                logger.error(f"Merge failed for {anchor.name} ({anchor.address}): {outcome.error}")
                record = self._fallback_record(anchor, group, now)
                stats.fallback_used += 1
            merged.append(record)

        for index, anchor in enumerate(anchors):
            if index in groups:
                continue
            merged.append(self._passthrough(anchor, now))
            stats.fallback_used += 1

        for candidate in unmatched_candidates:
            merged.append(self._new_entity(candidate, now))
            stats.successfully_merged += 1

        if len(merged) > self.config.max_result:
            logger.warning(
                f"Merged output has {len(merged)} records; truncating to {self.config.max_result}"
            )
            merged = merged[:self.config.max_result]
            stats.truncated = True

        stats.total_processed = len(merged)
        stats.quality_score = quality_score(merged)
        stats.processing_time_ms = int((time.perf_counter() - start) * 1000)

        return MergeResult(merged=merged, statistics=stats, conflicts=conflicts)

    def merge_group(
        self,
        anchor: AuthoritativeRecord,
        candidates: Sequence[RawCandidateRecord],
        now: Optional[str] = None,
    ) -> tuple[MergedRecord, list[Conflict]]:
        """
        Merge one registry record with the candidates matched to it.

        A single candidate is used as-is; two or more are cross-validated
        first so that only corroborated values reach the record.

        Returns:
            Tuple of (merged record, conflicts found)
        """
        now = now or utc_now_iso()
        supplementary = None

        if len(candidates) == 1:
            candidate = candidates[0]
            crawled = candidate.field_values()
            observed = crawled
            crawled_confidence = candidate.extraction_confidence
            price: PriceResolution = self.extractor.resolve_prices([candidate])
        else:
            validated = self.validator.validate(list(candidates), anchor)
            crawled = validated.as_fields()
            observed = validated.crawled_values
            crawled_confidence = validated.confidence
            price = validated.price
            supplementary = validated.supplementary or None

        data = anchor.model_dump(exclude={"kind"})

        for name in CRAWL_PRIORITY_FIELDS:
            if is_empty(data.get(name)) and not is_empty(crawled.get(name)):
                data[name] = crawled[name]
        for name in LIST_FIELDS:
            data[name] = union_lists(getattr(anchor, name), crawled.get(name))
        if is_empty(data.get("price")):
            data["price"] = price.final_price

        anchor_confidence = anchor.confidence if anchor.confidence is not None else DEFAULT_CONFIDENCE
        data["confidence"] = max(anchor_confidence, crawled_confidence)
        data["source"] = join_sources(
            anchor.source or DEFAULT_REGISTRY_SOURCE,
            *(c.source_tag for c in candidates),
        )
        data["service_type"] = anchor.service_type or derive_service_type(anchor.name)
        data["updated_at"] = now
        data["crawled_at"] = now
        if anchor.is_currently_open is None:
            data["is_currently_open"] = True
        data["supplementary"] = supplementary

        record = _finalize(data)

        conflicts = [
            Conflict(
                entity_key=anchor.key,
                field=to_camel(name),
                authoritative_value=getattr(anchor, name),
                crawled_value=observed.get(name),
            )
            for name in CONFLICT_FIELDS
            if values_differ(getattr(anchor, name), observed.get(name))
        ]
        for conflict in conflicts:
            logger.debug(
                f"Conflict on {conflict.entity_key}.{conflict.field}: "
                f"{conflict.authoritative_value!r} kept over {conflict.crawled_value!r}"
            )

        return record, conflicts

    def _fallback_record(
        self,
        anchor: AuthoritativeRecord,
        candidates: Sequence[RawCandidateRecord],
        now: str,
    ) -> MergedRecord:
        data = _safe_payload(anchor)
        anchor_confidence = anchor.confidence if anchor.confidence is not None else DEFAULT_CONFIDENCE
        data["confidence"] = max(
            [anchor_confidence] + [c.extraction_confidence for c in candidates]
        )
        data["source"] = MERGE_FALLBACK_SOURCE
        data["service_type"] = anchor.service_type or derive_service_type(anchor.name)
        data["updated_at"] = now
        try:
            return _finalize(data)
        except ValueError as e:
            raise MergeInvariantError(
                f"Fallback record for {anchor.name} ({anchor.address}) is not serializable: {e}"
            ) from e

    def _passthrough(self, anchor: AuthoritativeRecord, now: str) -> MergedRecord:
        """Unmatched registry record, metadata normalized only."""
        try:
            data = anchor.model_dump(exclude={"kind"})
            data["confidence"] = anchor.confidence if anchor.confidence is not None else DEFAULT_CONFIDENCE
            data["source"] = anchor.source or DEFAULT_REGISTRY_SOURCE
            data["service_type"] = anchor.service_type or derive_service_type(anchor.name)
            data["updated_at"] = now
            return _finalize(data)
        except ValueError as e:
            logger.error(f"Passthrough failed for {anchor.name}: {e}")
            return self._fallback_record(anchor, [], now)

    def _new_entity(self, candidate: RawCandidateRecord, now: str) -> MergedRecord:
        """Unmatched crawled record as a new gym."""
        exclude = {"kind", "source_tag", "extraction_confidence", "text"}
        try:
            data = candidate.model_dump(exclude=exclude)
        except ValueError as e:
            logger.error(f"Dropping unserializable extras from {candidate.name}: {e}")
            data = {k: v for k, v in _safe_payload(candidate).items() if k not in exclude}
        data["source"] = candidate.source_tag
        data["confidence"] = candidate.extraction_confidence
        data["service_type"] = derive_service_type(candidate.name)
        data["updated_at"] = now
        data["crawled_at"] = now
        try:
            return _finalize(data)
        except ValueError as e:
            logger.error(f"New entity {candidate.name} not serializable, keeping safe fields: {e}")
            data = {k: v for k, v in _safe_payload(candidate).items() if k not in exclude}
            data.update(
                source=candidate.source_tag,
                confidence=candidate.extraction_confidence,
                service_type=derive_service_type(candidate.name),
                updated_at=now,
            )
            try:
                return _finalize(data)
            except ValueError as inner:
                raise MergeInvariantError(
                    f"Crawled record {candidate.name} is not serializable: {inner}"
                ) from inner

    def _check_container(self, items: Any, label: str):
        if not isinstance(items, (list, tuple)):
            raise MergeInputError(
                f"{label} records must be a list, got {type(items).__name__}"
            )

    def _cap(self, records: list, limit: int, label: str, stats: MergeStatistics) -> list:
        if len(records) <= limit:
            return records
        logger.warning(f"{len(records)} {label} records exceed the limit of {limit}; truncating")
        stats.truncated = True
        return records[:limit]
