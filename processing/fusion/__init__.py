"""
Gym Data Fusion Module

Merges registry gym records with crawled sources:
- Rule-table field extraction from free text
- Weighted fuzzy matching (name, address, phone)
- Majority-vote cross-validation across sources
- Bounded-concurrency batch execution
"""

from processing.fusion.batching import BatchOrchestrator, BatchReport, ConcurrencyLimiter, ItemOutcome
from processing.fusion.cache import FifoCache
from processing.fusion.enrichment import CrawlEnricher, EnrichmentReport
from processing.fusion.extractors import (
    NO_PRICE_SENTINEL,
    ExtractionResult,
    FieldExtractor,
    PriceResolution,
    resolve_prices,
)
from processing.fusion.matchers import MatchResult, MatchType, RecordMatcher
from processing.fusion.merger import (
    MergeInputError,
    MergeInvariantError,
    MergerConfig,
    UnifiedMerger,
)
from processing.fusion.records import (
    AuthoritativeRecord,
    Conflict,
    MergedRecord,
    MergeResult,
    MergeStatistics,
    RawCandidateRecord,
    parse_records,
)
from processing.fusion.similarity import SimilarityScorer
from processing.fusion.validator import CrossValidator, ValidatedFields

__all__ = [
    "AuthoritativeRecord",
    "BatchOrchestrator",
    "BatchReport",
    "ConcurrencyLimiter",
    "Conflict",
    "CrawlEnricher",
    "CrossValidator",
    "EnrichmentReport",
    "ExtractionResult",
    "FieldExtractor",
    "FifoCache",
    "ItemOutcome",
    "MatchResult",
    "MatchType",
    "MergedRecord",
    "MergeInputError",
    "MergeInvariantError",
    "MergeResult",
    "MergeStatistics",
    "MergerConfig",
    "NO_PRICE_SENTINEL",
    "PriceResolution",
    "RawCandidateRecord",
    "RecordMatcher",
    "SimilarityScorer",
    "UnifiedMerger",
    "ValidatedFields",
    "parse_records",
    "resolve_prices",
]
