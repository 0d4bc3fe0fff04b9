"""
Field extraction from free text.

Crawled snippets (search result descriptions, cached page text) carry prices,
hours, ratings and so on as prose. The extractors here pull those out with an
ordered rule table: each rule is a regex plus the confidence of that phrasing
and a template for the stored value.

No extractor raises. Bad input yields an empty result with confidence 0.
"""

import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from config.logging import logger


NO_PRICE_SENTINEL = "방문후 확인"

# Korean won amount with optional thousands separators: 80,000
AMOUNT = r"(\d{1,3}(?:,\d{3})*)"

CATEGORY_FIELDS = ("membership_price", "pt_price", "gx_price", "day_pass_price")


class RuleTier(Enum):
    """What kind of price phrasing a rule recognizes."""
    CATEGORY = "category"
    DISCOUNT = "discount"
    MINIMUM = "minimum"
    RANGE = "range"
    BASIC = "basic"


@dataclass(frozen=True)
class PriceRule:
    """One row of the price rule table."""
    rule_id: str
    field: str
    tier: RuleTier
    pattern: re.Pattern
    confidence: float
    template: str  # "{amount}" is the captured number, "{match}" the whole match

    def render(self, match: re.Match) -> str:
        amount = match.group(1) if match.groups() else ""
        return self.template.format(amount=amount, match=match.group(0))


def _rule(rule_id, field_name, tier, pattern, confidence, template):
    return PriceRule(rule_id, field_name, tier, re.compile(pattern, re.IGNORECASE), confidence, template)


PRICE_RULES = (
    # Membership
    _rule("membership_explicit", "membership_price", RuleTier.CATEGORY, rf"회원권\s*{AMOUNT}\s*원", 0.9, "{amount}원"),
    _rule("membership_monthly", "membership_price", RuleTier.CATEGORY, rf"월\s*{AMOUNT}\s*원", 0.8, "{amount}원"),
    _rule("membership_yearly", "membership_price", RuleTier.CATEGORY, rf"년\s*{AMOUNT}\s*원", 0.8, "{amount}원"),
    # Personal training
    _rule("pt_explicit", "pt_price", RuleTier.CATEGORY, rf"PT\s*{AMOUNT}\s*원", 0.9, "{amount}원"),
    _rule("pt_trainer", "pt_price", RuleTier.CATEGORY, rf"개인트레이너\s*{AMOUNT}\s*원", 0.8, "{amount}원"),
    # Group exercise
    _rule("gx_explicit", "gx_price", RuleTier.CATEGORY, rf"GX\s*{AMOUNT}\s*원", 0.9, "{amount}원"),
    _rule("gx_group_lesson", "gx_price", RuleTier.CATEGORY, rf"그룹레슨\s*{AMOUNT}\s*원", 0.8, "{amount}원"),
    # Day pass
    _rule("day_pass_explicit", "day_pass_price", RuleTier.CATEGORY, rf"일일권\s*{AMOUNT}\s*원", 0.9, "{amount}원"),
    _rule("day_pass_one_day", "day_pass_price", RuleTier.CATEGORY, rf"1일\s*{AMOUNT}\s*원", 0.8, "{amount}원"),
    # Discounts never set a price and carry no confidence
    _rule("discount_prefix", "discount_info", RuleTier.DISCOUNT, rf"할인\s*{AMOUNT}\s*원", 0.0, "할인: {match}"),
    _rule("discount_suffix", "discount_info", RuleTier.DISCOUNT, rf"{AMOUNT}\s*원\s*할인", 0.0, "할인: {match}"),
    _rule("discount_percent", "discount_info", RuleTier.DISCOUNT, rf"{AMOUNT}\s*%?\s*할인", 0.0, "할인: {match}"),
    _rule("special_super", "discount_info", RuleTier.DISCOUNT, rf"초특가\s*{AMOUNT}\s*원", 0.0, "특가: {match}"),
    _rule("special", "discount_info", RuleTier.DISCOUNT, rf"특가\s*{AMOUNT}\s*원", 0.0, "특가: {match}"),
    # Only consulted when no category price was found
    _rule("minimum_won_from", "minimum_price", RuleTier.MINIMUM, rf"{AMOUNT}\s*원\s*부터", 0.7, "{match}"),
    _rule("minimum_manwon_from", "minimum_price", RuleTier.MINIMUM, rf"{AMOUNT}\s*만원\s*부터", 0.7, "{match}"),
    _rule("minimum_won_over", "minimum_price", RuleTier.MINIMUM, rf"{AMOUNT}\s*원\s*이상", 0.7, "{match}"),
    _rule("minimum_manwon_over", "minimum_price", RuleTier.MINIMUM, rf"{AMOUNT}\s*만원\s*이상", 0.7, "{match}"),
    _rule("range_won", "price_details", RuleTier.RANGE, rf"{AMOUNT}\s*원\s*[~-]\s*{AMOUNT}\s*원", 0.7, "범위: {match}"),
    _rule("range_manwon", "price_details", RuleTier.RANGE, rf"{AMOUNT}\s*만원\s*[~-]\s*{AMOUNT}\s*만원", 0.7, "범위: {match}"),
    _rule("basic_won", "price_details", RuleTier.BASIC, rf"{AMOUNT}\s*원", 0.3, "기본: {match}"),
    _rule("basic_manwon", "price_details", RuleTier.BASIC, rf"{AMOUNT}\s*만원", 0.3, "기본: {match}"),
)

FALLBACK_TIERS = (RuleTier.MINIMUM, RuleTier.RANGE, RuleTier.BASIC)

PHONE_PATTERNS = (
    re.compile(r"\d{2,3}-\d{3,4}-\d{4}"),
    re.compile(r"\d{2,3}\s\d{3,4}\s\d{4}"),
    re.compile(r"(?<!\d)\d{10,11}(?!\d)"),
)

# (pattern, which hour(s) the groups fill)
HOURS_PATTERNS = (
    (re.compile(r"(\d{1,2}:\d{2})\s*[-~]\s*(\d{1,2}:\d{2})"), ("open_hour", "close_hour")),
    (re.compile(r"(\d{1,2}시)\s*[-~]\s*(\d{1,2}시)"), ("open_hour", "close_hour")),
    (re.compile(r"오픈\s*(\d{1,2}:\d{2})"), ("open_hour",)),
    (re.compile(r"마감\s*(\d{1,2}:\d{2})"), ("close_hour",)),
)

RATING_PATTERNS = (
    re.compile(r"평점\s*(\d+\.?\d*)"),
    re.compile(r"별점\s*(\d+\.?\d*)"),
    re.compile(r"(\d+\.?\d*)\s*점"),
    re.compile(r"(\d+\.?\d*)\s*/\s*5"),
)

REVIEW_COUNT_PATTERNS = (
    re.compile(r"리뷰\s*(\d[\d,]*)"),
    re.compile(r"후기\s*(\d[\d,]*)"),
    re.compile(r"(\d[\d,]*)\s*개\s*리뷰"),
    re.compile(r"(\d[\d,]*)\s*개\s*후기"),
)


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    # Latin keywords must not touch other latin letters ("PT" but not "Sept")
    parts = []
    for keyword in keywords:
        escaped = re.escape(keyword)
        if keyword.isascii() and keyword[0].isalpha():
            escaped = rf"(?<![A-Za-z]){escaped}(?![A-Za-z])"
        parts.append(escaped)
    return re.compile("|".join(parts), re.IGNORECASE)


FACILITY_KEYWORDS = (
    ("샤워실", ("샤워", "shower")),
    ("주차장", ("주차", "parking")),
    ("락커룸", ("락커", "라커", "탈의실", "locker")),
    ("24시간", ("24시간", "24h", "24 hours")),
    ("사우나", ("사우나", "sauna")),
    ("PT", ("PT", "개인트레이닝", "personal training")),
    ("GX", ("GX", "그룹레슨", "그룹운동")),
    ("수영장", ("수영장", "pool")),
    ("운동복", ("운동복",)),
    ("수건", ("수건", "towel")),
)
FACILITY_PATTERNS = tuple((name, _keyword_pattern(words)) for name, words in FACILITY_KEYWORDS)


@dataclass
class ExtractionResult:
    """Prices extracted from one piece of text."""
    membership_price: Optional[str] = None
    pt_price: Optional[str] = None
    gx_price: Optional[str] = None
    day_pass_price: Optional[str] = None
    discount_info: Optional[str] = None
    minimum_price: Optional[str] = None
    price_details: Optional[str] = None
    confidence: float = 0.0
    rule_id: str = ""

    @property
    def has_price(self) -> bool:
        return any(
            getattr(self, name) for name in CATEGORY_FIELDS + ("minimum_price", "price_details")
        )

    def fields(self) -> dict[str, str]:
        """Non-empty extracted values keyed by field name."""
        names = CATEGORY_FIELDS + ("discount_info", "minimum_price", "price_details")
        return {name: getattr(self, name) for name in names if getattr(self, name)}


@dataclass
class PriceResolution:
    """Outcome of resolving prices across several sources."""
    final_price: str = NO_PRICE_SENTINEL
    tier: str = "none"
    match_count: int = 0
    membership_price: Optional[str] = None
    pt_price: Optional[str] = None
    gx_price: Optional[str] = None
    day_pass_price: Optional[str] = None
    minimum_price: Optional[str] = None
    price_details: Optional[str] = None

    def fields(self) -> dict[str, str]:
        names = CATEGORY_FIELDS + ("minimum_price", "price_details")
        return {name: getattr(self, name) for name in names if getattr(self, name)}


def most_common(values: list[Any]) -> tuple[Any, int]:
    """Most frequent value and its count. Ties go to the first seen."""
    if not values:
        return None, 0
    return Counter(values).most_common(1)[0]


def extract_phone(text: Any) -> Optional[str]:
    if not isinstance(text, str):
        return None
    for pattern in PHONE_PATTERNS:
        match = pattern.search(text)
        if match:
            return re.sub(r"\s", "-", match.group(0))
    return None


def extract_hours(text: Any) -> tuple[Optional[str], Optional[str]]:
    """Return (open_hour, close_hour); either may be None."""
    hours: dict[str, str] = {}
    if not isinstance(text, str):
        return None, None
    for pattern, targets in HOURS_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        for target, value in zip(targets, match.groups()):
            hours.setdefault(target, value)
        if "open_hour" in hours and "close_hour" in hours:
            break
    return hours.get("open_hour"), hours.get("close_hour")


def extract_rating(text: Any) -> Optional[float]:
    if not isinstance(text, str):
        return None
    for pattern in RATING_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            rating = float(match.group(1))
        except ValueError:
            continue
        if 0 <= rating <= 5:
            return rating
    return None


def extract_review_count(text: Any) -> Optional[int]:
    if not isinstance(text, str):
        return None
    for pattern in REVIEW_COUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1).replace(",", ""))
    return None


def extract_facilities(text: Any) -> list[str]:
    if not isinstance(text, str):
        return []
    return [name for name, pattern in FACILITY_PATTERNS if pattern.search(text)]


class FieldExtractor:
    """
    Rule-table driven extractor for gym fields in free text.

    Example:
        extractor = FieldExtractor()
        result = extractor.extract("회원권 80,000원, PT 50,000원")
        result.membership_price  # "80,000원"
    """

    def __init__(self, rules: tuple[PriceRule, ...] = PRICE_RULES):
        self.rules = rules

    def _first(self, tier: RuleTier, field_name: str, text: str) -> tuple[Optional[PriceRule], Optional[re.Match]]:
        for rule in self.rules:
            if rule.tier != tier or rule.field != field_name:
                continue
            match = rule.pattern.search(text)
            if match:
                return rule, match
        return None, None

    def extract(self, text: Any) -> ExtractionResult:
        """
        Extract prices and discount info from text.

        Args:
            text: Free text, typically a search snippet

        Returns:
            ExtractionResult; confidence 0.0 when nothing was found
        """
        if not isinstance(text, str) or not text.strip():
            return ExtractionResult(confidence=0.0, rule_id="invalid_input")

        try:
            result = ExtractionResult()

            for field_name in CATEGORY_FIELDS:
                rule, match = self._first(RuleTier.CATEGORY, field_name, text)
                if rule:
                    setattr(result, field_name, rule.render(match))
                    result.confidence = max(result.confidence, rule.confidence)
                    result.rule_id = rule.rule_id

            rule, match = self._first(RuleTier.DISCOUNT, "discount_info", text)
            if rule:
                result.discount_info = rule.render(match)

            if not any(getattr(result, name) for name in CATEGORY_FIELDS):
                for tier in FALLBACK_TIERS:
                    hit = next(
                        ((r, m) for r in self.rules if r.tier == tier
                         for m in [r.pattern.search(text)] if m),
                        None,
                    )
                    if hit:
                        rule, match = hit
                        setattr(result, rule.field, rule.render(match))
                        result.confidence = max(result.confidence, rule.confidence)
                        result.rule_id = rule.rule_id
                        break

            return result

        except Exception as e:
            logger.warning(f"Price extraction failed: {e}")
            return ExtractionResult(confidence=0.0, rule_id="extraction_error")

    def extract_all(self, text: Any) -> dict[str, Any]:
        """
        Extract every supported field from text.

        Returns:
            Dict of snake_case field name -> value, only for fields found
        """
        if not isinstance(text, str) or not text.strip():
            return {}

        try:
            fields: dict[str, Any] = dict(self.extract(text).fields())

            phone = extract_phone(text)
            if phone:
                fields["phone"] = phone

            open_hour, close_hour = extract_hours(text)
            if open_hour:
                fields["open_hour"] = open_hour
            if close_hour:
                fields["close_hour"] = close_hour

            rating = extract_rating(text)
            if rating is not None:
                fields["rating"] = rating

            review_count = extract_review_count(text)
            if review_count is not None:
                fields["review_count"] = review_count

            facilities = extract_facilities(text)
            if facilities:
                fields["facilities"] = facilities

            return fields

        except Exception as e:
            logger.warning(f"Field extraction failed: {e}")
            return {}

    def resolve_prices(self, results: Iterable[Any]) -> PriceResolution:
        return resolve_prices(results)


def resolve_prices(results: Iterable[Any]) -> PriceResolution:
    """
    Pick a final price from several sources' extractions.

    Order of trust:
    1. Category prices (membership, PT, GX, day pass), per category. The most
       frequent value is used when at least two sources agree on it, or when
       it is the only value any source gave for that category.
    2. Minimum-price phrasing ("5만원부터"), most frequent.
    3. Range or bare price text, most frequent.
    4. NO_PRICE_SENTINEL.

    Works with anything exposing the price attributes (ExtractionResult,
    candidate records). Never raises.
    """
    try:
        results = list(results or [])
        resolution = PriceResolution()

        trusted: list[tuple[str, str, int]] = []
        for field_name in CATEGORY_FIELDS:
            observed = [v for v in (getattr(r, field_name, None) for r in results) if v]
            value, count = most_common(observed)
            if value is None:
                continue
            if count >= 2 or len(set(observed)) == 1:
                setattr(resolution, field_name, value)
                trusted.append((field_name, value, count))

        if trusted:
            _, value, count = trusted[0]
            resolution.final_price = value
            resolution.tier = "exact"
            resolution.match_count = count
            return resolution

        for field_name, tier in (("minimum_price", "minimum"), ("price_details", "details")):
            observed = [v for v in (getattr(r, field_name, None) for r in results) if v]
            value, count = most_common(observed)
            if value is not None:
                setattr(resolution, field_name, value)
                resolution.final_price = value
                resolution.tier = tier
                resolution.match_count = count
                return resolution

        return resolution

    except Exception as e:
        logger.warning(f"Price resolution failed, using sentinel: {e}")
        return PriceResolution()
