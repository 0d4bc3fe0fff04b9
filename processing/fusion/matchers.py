"""
Matching crawled candidates to authoritative gym records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from processing.fusion.records import AuthoritativeRecord, GymFields, RawCandidateRecord
from processing.fusion.similarity import SimilarityScorer


class MatchType(Enum):
    """Type of match found."""
    EXACT = "exact"        # Every compared component identical
    FUZZY = "fuzzy"        # Weighted similarity above threshold
    NO_MATCH = "no_match"


# Component weights; renormalized over the components present on both sides
DEFAULT_WEIGHTS = {
    "name": 0.4,
    "address": 0.3,
    "phone": 0.3,
}


@dataclass
class MatchResult:
    """Result of matching one candidate against the authoritative pool."""
    authoritative: Optional[AuthoritativeRecord] = None
    candidate: Optional[RawCandidateRecord] = None
    score: float = 0.0
    match_type: MatchType = MatchType.NO_MATCH
    matched_on: list[str] = field(default_factory=list)
    pool_index: Optional[int] = None
    details: dict = field(default_factory=dict)

    @property
    def is_match(self) -> bool:
        return self.authoritative is not None and self.score > 0

    def __repr__(self) -> str:
        if self.authoritative:
            return (
                f"<MatchResult({self.authoritative.name}, {self.match_type.value}, "
                f"score={self.score:.2f})>"
            )
        return "<MatchResult(no match)>"


class RecordMatcher:
    """
    Fuzzy matcher over name, address and phone.

    A candidate matches the best-scoring pool record when that score is
    strictly above the threshold. Scans the whole pool per candidate, so cost
    grows linearly with pool size.
    """

    def __init__(
        self,
        threshold: float = 0.8,
        scorer: Optional[SimilarityScorer] = None,
        weights: Optional[dict[str, float]] = None,
    ):
        """
        Initialize matcher.

        Args:
            threshold: Minimum score (exclusive, 0-1) to accept a match
            scorer: Similarity functions
            weights: Component weights keyed by name/address/phone
        """
        self.threshold = threshold
        self.scorer = scorer or SimilarityScorer()
        self.weights = weights or DEFAULT_WEIGHTS

    def score_components(self, a: GymFields, b: GymFields) -> dict[str, float]:
        """Per-component similarity for components present on both records."""
        components = {}
        if a.name and b.name:
            components["name"] = self.scorer.string(a.name, b.name)
        if a.address and b.address:
            components["address"] = self.scorer.string(a.address, b.address)
        if a.phone and b.phone:
            components["phone"] = self.scorer.phone(a.phone, b.phone)
        return components

    def score(self, a: GymFields, b: GymFields) -> float:
        """Weighted similarity of two records in [0, 1]."""
        components = self.score_components(a, b)
        total_weight = sum(self.weights[name] for name in components)
        if not total_weight:
            return 0.0
        weighted = sum(value * self.weights[name] for name, value in components.items())
        return weighted / total_weight

    def match(
        self,
        candidate: RawCandidateRecord,
        pool: Sequence[AuthoritativeRecord],
    ) -> Optional[MatchResult]:
        """
        Find the best authoritative match for a candidate.

        Returns:
            MatchResult, or None when nothing scores above the threshold
        """
        best_index = None
        best_score = 0.0
        best_components: dict[str, float] = {}

        for index, record in enumerate(pool):
            components = self.score_components(candidate, record)
            total_weight = sum(self.weights[name] for name in components)
            if not total_weight:
                continue
            score = sum(v * self.weights[n] for n, v in components.items()) / total_weight
            # Strict comparison keeps the earliest record on ties
            if score > best_score:
                best_index = index
                best_score = score
                best_components = components

        if best_index is None or best_score <= self.threshold:
            return None

        match_type = (
            MatchType.EXACT
            if all(value == 1.0 for value in best_components.values())
            else MatchType.FUZZY
        )
        return MatchResult(
            authoritative=pool[best_index],
            candidate=candidate,
            score=best_score,
            match_type=match_type,
            matched_on=[name for name, value in best_components.items() if value > 0],
            pool_index=best_index,
            details={"components": best_components},
        )
