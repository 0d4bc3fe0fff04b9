"""
Record types for gym data fusion.

Crawl and persistence collaborators hand over loosely-shaped dicts. They are
validated once, at the boundary, into one of two tagged models:

- AuthoritativeRecord: a registry row previously persisted (read-only here)
- RawCandidateRecord: one crawled source's view of a gym (frozen)

Everything downstream of parse_records() works on validated models only.
Field names are snake_case in Python and camelCase on the wire.
"""

import json
import math
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from config.logging import logger
from processing.fusion.extractors import FieldExtractor


DEFAULT_CONFIDENCE = 0.5
DEFAULT_REGISTRY_SOURCE = "registry"
DEFAULT_CRAWL_SOURCE = "crawled"

STRING_FIELDS = (
    "phone",
    "open_hour",
    "close_hour",
    "price",
    "membership_price",
    "pt_price",
    "gx_price",
    "day_pass_price",
    "price_details",
    "minimum_price",
    "discount_info",
    "website",
    "instagram",
    "facebook",
)
PRICE_FIELDS = (
    "price",
    "membership_price",
    "pt_price",
    "gx_price",
    "day_pass_price",
    "price_details",
    "minimum_price",
)
MIN_RATING = 0.0
MAX_RATING = 5.0

FLAG_FIELDS = ("has_pt", "has_gx", "has_group_pt", "has_parking", "has_shower", "is_24_hours")
LIST_FIELDS = ("facilities", "services")

_TRUE_STRINGS = {"true", "1", "y", "yes"}
_FALSE_STRINGS = {"false", "0", "n", "no"}

_shared_extractor = FieldExtractor()


class ServiceType(str, Enum):
    """Derived service taxonomy for a gym."""
    GYM = "gym"
    PT = "pt"
    GX = "gx"
    YOGA = "yoga"
    PILATES = "pilates"
    CROSSFIT = "crossfit"


# Checked in order; the first keyword hit wins
SERVICE_TYPE_KEYWORDS = (
    (ServiceType.CROSSFIT, ("크로스핏", "crossfit")),
    (ServiceType.PT, ("pt", "개인트레이닝")),
    (ServiceType.GX, ("gx", "그룹")),
    (ServiceType.YOGA, ("요가", "yoga")),
    (ServiceType.PILATES, ("필라테스", "pilates")),
)


def derive_service_type(name: Optional[str]) -> str:
    """Derive the service type from a gym name."""
    if not isinstance(name, str):
        return ServiceType.GYM.value
    lowered = name.lower()
    for service_type, keywords in SERVICE_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return service_type.value
    return ServiceType.GYM.value


def record_key(name: Optional[str], address: Optional[str]) -> str:
    """Normalized "name-address" key used for dedup and caching."""
    def _norm(value: Optional[str]) -> str:
        if not isinstance(value, str):
            return ""
        return re.sub(r"\s+", "", value).lower()

    return f"{_norm(name)}-{_norm(address)}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def is_json_safe(value: Any) -> bool:
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError):
        return False
    return True


def _clean_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    # NaN and Infinity have no JSON form
    return number if math.isfinite(number) else None


def _coerce_list(value: Any) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return None
    cleaned = [item for item in (_clean_str(i) for i in items) if item]
    # Order-preserving dedup
    cleaned = list(dict.fromkeys(cleaned))
    return cleaned or None


def _coerce_flag(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


class GymFields(BaseModel):
    """Fields shared by every gym record shape."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    phone: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    open_hour: Optional[str] = None
    close_hour: Optional[str] = None

    # Prices
    price: Optional[str] = None
    membership_price: Optional[str] = None
    pt_price: Optional[str] = None
    gx_price: Optional[str] = None
    day_pass_price: Optional[str] = None
    price_details: Optional[str] = None
    minimum_price: Optional[str] = None
    discount_info: Optional[str] = None

    facilities: Optional[list[str]] = None
    services: Optional[list[str]] = None

    # Web presence
    website: Optional[str] = None
    instagram: Optional[str] = None
    facebook: Optional[str] = None

    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Service flags
    has_pt: Optional[bool] = Field(default=None, alias="hasPT")
    has_gx: Optional[bool] = Field(default=None, alias="hasGX")
    has_group_pt: Optional[bool] = Field(default=None, alias="hasGroupPT")
    has_parking: Optional[bool] = None
    has_shower: Optional[bool] = None
    is_24_hours: Optional[bool] = Field(default=None, alias="is24Hours")

    equipment: Optional[Any] = None

    @field_validator("name", "address", *STRING_FIELDS, mode="before")
    @classmethod
    def _strings(cls, value: Any) -> Optional[str]:
        return _clean_str(value)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _floats(cls, value: Any) -> Optional[float]:
        return _coerce_float(value)

    @field_validator("rating", mode="before")
    @classmethod
    def _rating(cls, value: Any) -> Optional[float]:
        number = _coerce_float(value)
        if number is None or not MIN_RATING <= number <= MAX_RATING:
            return None
        return number

    @field_validator("review_count", mode="before")
    @classmethod
    def _ints(cls, value: Any) -> Optional[int]:
        number = _coerce_float(value)
        return int(number) if number is not None else None

    @field_validator(*LIST_FIELDS, mode="before")
    @classmethod
    def _lists(cls, value: Any) -> Optional[list[str]]:
        return _coerce_list(value)

    @field_validator(*FLAG_FIELDS, mode="before")
    @classmethod
    def _flags(cls, value: Any) -> Optional[bool]:
        return _coerce_flag(value)

    @property
    def key(self) -> str:
        return record_key(self.name, self.address)

    def field_values(self) -> dict[str, Any]:
        """Declared field values (snake_case), without extras or the tag."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name != "kind"
        }


class AuthoritativeRecord(GymFields):
    """A persisted registry record. Registry-only attributes ride along as extras."""

    kind: Literal["authoritative"] = "authoritative"
    id: Optional[Union[int, str]] = None
    source: Optional[str] = None
    confidence: Optional[float] = None
    service_type: Optional[str] = None
    is_currently_open: Optional[bool] = None
    updated_at: Optional[str] = None
    crawled_at: Optional[str] = None

    @field_validator("source", "service_type", "updated_at", "crawled_at", mode="before")
    @classmethod
    def _meta_strings(cls, value: Any) -> Optional[str]:
        return _clean_str(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> Optional[float]:
        number = _coerce_float(value)
        return None if number is None else min(1.0, max(0.0, number))


class RawCandidateRecord(GymFields):
    """
    One crawled source's view of a gym.

    Structured fields missing from the payload are filled from the free-text
    snippets in `text`. When the source gives no confidence, one is estimated
    from how complete the record is.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["candidate"] = "candidate"
    source_tag: str = Field(
        default=DEFAULT_CRAWL_SOURCE,
        validation_alias=AliasChoices("sourceTag", "source_tag", "source"),
    )
    extraction_confidence: float = Field(
        default=0.0,
        validation_alias=AliasChoices(
            "extractionConfidence", "extraction_confidence", "confidence"
        ),
    )
    text: Optional[list[str]] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_from_text(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)

        text = data.get("text")
        if isinstance(text, str):
            text = [text]
        if isinstance(text, (list, tuple)):
            snippets = [t for t in text if isinstance(t, str) and t.strip()]
            data["text"] = snippets or None
            for snippet in snippets:
                for name, value in _shared_extractor.extract_all(snippet).items():
                    if not _has_value(data, name):
                        data[name] = value

        if not any(_has_value(data, alias) for alias in (
            "extraction_confidence", "extractionConfidence", "confidence"
        )):
            data["extraction_confidence"] = estimate_confidence(data)
        return data

    @field_validator("source_tag", mode="before")
    @classmethod
    def _source_tag(cls, value: Any) -> str:
        return _clean_str(value) or DEFAULT_CRAWL_SOURCE

    @field_validator("extraction_confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        number = _coerce_float(value)
        return 0.0 if number is None else min(1.0, max(0.0, number))


class MergedRecord(GymFields):
    """Output entity of a merge run."""

    id: Optional[Union[int, str]] = None
    source: str
    confidence: float = Field(ge=0.0, le=1.0)
    service_type: str = ServiceType.GYM.value
    updated_at: str
    crawled_at: Optional[str] = None
    is_currently_open: Optional[bool] = None
    supplementary: Optional[dict[str, list[Any]]] = None

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready camelCase dict, absent fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


SourceRecord = Annotated[
    Union[AuthoritativeRecord, RawCandidateRecord],
    Field(discriminator="kind"),
]
_source_adapter: TypeAdapter = TypeAdapter(SourceRecord)


def _has_value(data: Mapping, name: str) -> bool:
    """Check a raw payload for a field under its snake or camel name."""
    for key in (name, to_camel(name)):
        if not is_empty(data.get(key)):
            return True
    return False


def estimate_confidence(data: Mapping) -> float:
    """Completeness-based confidence for a crawled payload without one."""
    confidence = 0.0
    if _has_value(data, "phone"):
        confidence += 0.3
    if _has_value(data, "open_hour"):
        confidence += 0.2
    if any(_has_value(data, name) for name in PRICE_FIELDS):
        confidence += 0.2
    if _has_value(data, "rating"):
        confidence += 0.1
    if _has_value(data, "facilities"):
        confidence += 0.1
    if _has_value(data, "review_count"):
        confidence += 0.1
    return round(min(confidence, 1.0), 4)


def parse_records(
    items: Any,
    kind: Literal["authoritative", "candidate"],
) -> tuple[list[Union[AuthoritativeRecord, RawCandidateRecord]], int]:
    """
    Validate raw items into tagged records.

    Items that are not mappings, miss name/address, or otherwise fail
    validation are skipped with a warning.

    Returns:
        Tuple of (valid records in input order, number skipped)
    """
    model_type = AuthoritativeRecord if kind == "authoritative" else RawCandidateRecord
    records = []
    skipped = 0

    for index, item in enumerate(items):
        if isinstance(item, model_type):
            records.append(item)
            continue
        if isinstance(item, BaseModel):
            item = item.model_dump(by_alias=True, exclude={"kind"}, exclude_none=True)

        if not isinstance(item, Mapping):
            logger.warning(
                f"Skipping {kind} record #{index}: expected a mapping, got {type(item).__name__}"
            )
            skipped += 1
            continue

        try:
            records.append(_source_adapter.validate_python({**item, "kind": kind}))
        except ValidationError as e:
            missing = [
                ".".join(str(p) for p in err["loc"]) for err in e.errors()
            ]
            logger.warning(
                f"Skipping {kind} record #{index} ({item.get('name', '?')}): "
                f"invalid fields {missing}"
            )
            skipped += 1

    return records, skipped


@dataclass
class Conflict:
    """Disagreement between an authoritative and a crawled value. Diagnostic only."""
    entity_key: str
    field: str
    authoritative_value: Any
    crawled_value: Any
    resolution: str = "authoritative"

    def to_dict(self) -> dict[str, Any]:
        return {to_camel(k): v for k, v in asdict(self).items()}


@dataclass
class MergeStatistics:
    """Statistics from a merge run."""
    total_processed: int = 0
    successfully_merged: int = 0
    fallback_used: int = 0
    duplicates_removed: int = 0
    quality_score: float = 0.0
    processing_time_ms: int = 0
    matched_pairs: int = 0
    invalid_skipped: int = 0
    low_confidence_discarded: int = 0
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {to_camel(k): v for k, v in asdict(self).items()}

    def log_summary(self):
        """Log summary statistics."""
        logger.info("=" * 60)
        logger.info("MERGE COMPLETE")
        logger.info("=" * 60)
        logger.info(f"Duration: {self.processing_time_ms} ms")
        logger.info(f"Records out: {self.total_processed}")
        logger.info(f"  - Matched pairs: {self.matched_pairs}")
        logger.info(f"  - Successfully merged: {self.successfully_merged}")
        logger.info(f"  - Fallback used: {self.fallback_used}")
        logger.info(f"Duplicates removed: {self.duplicates_removed}")
        logger.info(f"Invalid skipped: {self.invalid_skipped}")
        logger.info(f"Low confidence discarded: {self.low_confidence_discarded}")
        logger.info(f"Quality score: {self.quality_score:.2f}")
        if self.truncated:
            logger.info("Input or output was truncated at a safety ceiling")
        logger.info("=" * 60)


@dataclass
class MergeResult:
    """Output of UnifiedMerger.merge()."""
    merged: list[MergedRecord] = field(default_factory=list)
    statistics: MergeStatistics = field(default_factory=MergeStatistics)
    conflicts: list[Conflict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged": [record.to_wire() for record in self.merged],
            "statistics": self.statistics.to_dict(),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }
