"""
Cross-validation of several crawled views of the same gym.

When two or more sources describe one authoritative record, a value is only
believed if at least two of them agree on it. Lone observations are kept
aside in `supplementary` instead of overriding anything.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from pydantic.alias_generators import to_camel

from config.logging import logger
from processing.fusion.extractors import FieldExtractor, PriceResolution, most_common
from processing.fusion.records import (
    DEFAULT_CONFIDENCE,
    FLAG_FIELDS,
    GymFields,
    RawCandidateRecord,
    is_empty,
    is_json_safe,
)


FALLBACK_SOURCE = "fallback_error_recovery"
FALLBACK_CONFIDENCE = 0.1
MAX_VALIDATED_CONFIDENCE = 0.9

# Read from the first source that has them, for conflict reporting only
IDENTITY_FIELDS = ("name", "address")
# Majority vote, needs two agreeing sources to override the anchor
CONSENSUS_FIELDS = ("phone", "open_hour", "close_hour", "discount_info")
# First source that has a value wins
FIRST_PRESENT_FIELDS = (
    "rating",
    "review_count",
    "website",
    "instagram",
    "facebook",
    "price",
    *FLAG_FIELDS,
    "equipment",
)

PHONE_BONUS = 0.3
HOURS_BONUS = 0.2
PRICE_BONUS = 0.3
FACILITIES_BONUS = 0.2


@dataclass
class ValidationStats:
    """How much agreement cross-validation found."""
    phone_matches: int = 0
    hours_matches: int = 0
    price_matches: int = 0
    facilities_matches: int = 0
    total_sources: int = 0


@dataclass
class ValidatedFields:
    """Merged view of several sources, seeded from the anchor record."""
    values: dict[str, Any] = field(default_factory=dict)
    facilities: list[str] = field(default_factory=list)
    price: PriceResolution = field(default_factory=PriceResolution)
    confidence: float = 0.0
    source: str = ""
    supplementary: dict[str, list[Any]] = field(default_factory=dict)
    # What the sources themselves said, before the anchor is laid over it
    crawled_values: dict[str, Any] = field(default_factory=dict)
    stats: ValidationStats = field(default_factory=ValidationStats)

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE

    def as_fields(self) -> dict[str, Any]:
        """Flat snake_case field dict including prices and facilities."""
        fields = dict(self.values)
        for name, value in self.price.fields().items():
            if is_empty(fields.get(name)):
                fields[name] = value
        if self.facilities:
            fields["facilities"] = list(self.facilities)
        return fields


def _read(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        value = record.get(name)
        return value if value is not None else record.get(to_camel(name))
    return getattr(record, name, None)


def _first_present(results: Sequence[Any], name: str) -> Any:
    for record in results:
        value = getattr(record, name, None)
        if not is_empty(value):
            return value
    return None


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
    return None if is_empty(value) else value


class CrossValidator:
    """
    Reconciles two or more candidate records against an authoritative anchor.

    Never raises: any failure returns a low-confidence copy of the anchor.
    """

    def __init__(self, extractor: Optional[FieldExtractor] = None):
        self.extractor = extractor or FieldExtractor()

    def validate(
        self,
        results: Sequence[RawCandidateRecord],
        anchor: GymFields,
    ) -> ValidatedFields:
        """
        Cross-validate candidate records.

        Args:
            results: Candidate records describing the same gym
            anchor: Authoritative record they were matched to

        Returns:
            ValidatedFields; is_fallback is True when validation could not run
        """
        if not isinstance(results, (list, tuple)) or not results:
            logger.warning("Cross-validation called without results; using anchor fallback")
            return self.fallback(anchor)
        if not isinstance(anchor, GymFields):
            logger.warning(f"Cross-validation anchor is {type(anchor).__name__}; using fallback")
            return self.fallback(anchor)

        try:
            stats = ValidationStats(total_sources=len(results))
            values = {name: getattr(anchor, name, None) for name in CONSENSUS_FIELDS + FIRST_PRESENT_FIELDS}
            supplementary: dict[str, list[Any]] = {}
            crawled_values: dict[str, Any] = {}

            for name in IDENTITY_FIELDS:
                crawled_values[name] = _first_present(results, name)

            for name in CONSENSUS_FIELDS:
                observed = [v for v in (_normalize(getattr(r, name, None)) for r in results) if v is not None]
                if not observed:
                    continue
                value, count = most_common(observed)
                if count >= 2:
                    values[name] = value
                    crawled_values[name] = value
                    if name == "phone":
                        stats.phone_matches = count
                    elif name in ("open_hour", "close_hour"):
                        stats.hours_matches = max(stats.hours_matches, count)
                leftovers = [
                    v for v in dict.fromkeys(observed)
                    if v != values[name]
                ]
                if leftovers:
                    supplementary[name] = leftovers

            facility_votes: dict[str, int] = {}
            for record in results:
                for facility in dict.fromkeys(getattr(record, "facilities", None) or []):
                    facility_votes[facility] = facility_votes.get(facility, 0) + 1
            facilities = [name for name, votes in facility_votes.items() if votes >= 2]
            stats.facilities_matches = len(facilities)
            single_mentions = [name for name, votes in facility_votes.items() if votes < 2]
            if single_mentions:
                supplementary["facilities"] = single_mentions

            price = self.extractor.resolve_prices(results)
            if price.match_count >= 2:
                stats.price_matches = price.match_count

            crawled_values.update(price.fields())
            for name in FIRST_PRESENT_FIELDS:
                crawled_values[name] = _first_present(results, name)
                if is_empty(values.get(name)):
                    values[name] = crawled_values[name]

            anchor_confidence = getattr(anchor, "confidence", None)
            if anchor_confidence is None:
                anchor_confidence = DEFAULT_CONFIDENCE
            base = max(anchor_confidence, results[0].extraction_confidence or 0.0)
            bonus = 0.0
            if stats.phone_matches >= 2:
                bonus += PHONE_BONUS
            if stats.hours_matches >= 2:
                bonus += HOURS_BONUS
            if stats.price_matches >= 2:
                bonus += PRICE_BONUS
            if stats.facilities_matches > 0:
                bonus += FACILITIES_BONUS
            confidence = max(anchor_confidence, min(MAX_VALIDATED_CONFIDENCE, base + bonus))

            logger.debug(
                f"Cross-validated {anchor.name}: {len(results)} sources, "
                f"phone={stats.phone_matches} hours={stats.hours_matches} "
                f"price={stats.price_matches} facilities={stats.facilities_matches}"
            )

            return ValidatedFields(
                values=values,
                facilities=facilities,
                price=price,
                confidence=confidence,
                source=f"cross_validated_{len(results)}_sources",
                supplementary=supplementary,
                crawled_values={k: v for k, v in crawled_values.items() if not is_empty(v)},
                stats=stats,
            )

        except Exception as e:
            logger.warning(f"Cross-validation failed for {getattr(anchor, 'name', '?')}: {e}")
            return self.fallback(anchor)

    def fallback(self, anchor: Any) -> ValidatedFields:
        """Low-confidence copy of whatever scalars the anchor safely offers."""
        values = {}
        for name in CONSENSUS_FIELDS + FIRST_PRESENT_FIELDS:
            value = _read(anchor, name)
            values[name] = value if is_json_safe(value) else None

        try:
            anchor_confidence = float(_read(anchor, "confidence") or 0.0)
        except (TypeError, ValueError):
            anchor_confidence = 0.0

        return ValidatedFields(
            values=values,
            confidence=min(FALLBACK_CONFIDENCE, anchor_confidence or FALLBACK_CONFIDENCE),
            source=FALLBACK_SOURCE,
        )
