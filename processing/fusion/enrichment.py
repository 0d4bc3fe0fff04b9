"""
Crawl enrichment: turn registry records into crawled candidates.

The fetch collaborator is injected. For each registry record it returns the
raw payloads its sources produced: plain text snippets or partially
structured dicts. Each payload becomes one RawCandidateRecord.

Fetches run through the BatchOrchestrator. Results are cached per
name-address key; the cache is read before scheduling and written only after
each batch settles.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from config.logging import logger
from config.settings import settings
from processing.fusion.batching import BatchOrchestrator, ItemOutcome
from processing.fusion.cache import FifoCache
from processing.fusion.records import AuthoritativeRecord, RawCandidateRecord, parse_records


Payload = Union[str, Mapping]
FetchFn = Callable[[AuthoritativeRecord], Awaitable[Sequence[Payload]]]


@dataclass
class EnrichmentReport:
    """Outcome of an enrichment run."""
    candidates: list[RawCandidateRecord] = field(default_factory=list)
    fetched: int = 0
    cache_hits: int = 0
    failed: int = 0
    discarded: int = 0
    invalid_skipped: int = 0

    def log_summary(self):
        logger.info(
            f"Enrichment: {len(self.candidates)} candidates "
            f"({self.fetched} fetched, {self.cache_hits} cached, {self.failed} failed, "
            f"{self.discarded} below confidence, {self.invalid_skipped} invalid)"
        )


class CrawlEnricher:
    """
    Produces crawled candidates for registry records.

    Usage:
        enricher = CrawlEnricher(fetch=search_client.fetch)
        report = enricher.enrich(registry_records)
        result = UnifiedMerger().merge(registry_records, report.candidates)
    """

    def __init__(
        self,
        fetch: FetchFn,
        orchestrator: Optional[BatchOrchestrator] = None,
        cache: Optional[FifoCache] = None,
        min_confidence: Optional[float] = None,
    ):
        self.fetch = fetch
        self.orchestrator = orchestrator or BatchOrchestrator()
        self.cache = cache if cache is not None else FifoCache(settings.CACHE_SIZE)
        self.min_confidence = (
            min_confidence if min_confidence is not None else settings.MIN_SEARCH_CONFIDENCE
        )

    def to_candidates(
        self,
        anchor: AuthoritativeRecord,
        payloads: Sequence[Payload],
    ) -> tuple[list[RawCandidateRecord], int]:
        """
        Convert one record's payloads into candidates.

        Text payloads are tagged crawl_<n>; dict payloads keep their own
        source tag. Name and address default to the registry record's.

        Returns:
            Tuple of (candidates, number of invalid payloads)
        """
        raw = []
        for position, payload in enumerate(payloads or [], 1):
            if isinstance(payload, str):
                raw.append({
                    "name": anchor.name,
                    "address": anchor.address,
                    "text": [payload],
                    "sourceTag": f"crawl_{position}",
                })
            elif isinstance(payload, Mapping):
                item = dict(payload)
                item.setdefault("name", anchor.name)
                item.setdefault("address", anchor.address)
                if not any(k in item for k in ("sourceTag", "source_tag", "source")):
                    item["sourceTag"] = f"crawl_{position}"
                raw.append(item)
            else:
                raw.append(payload)
        return parse_records(raw, "candidate")

    async def enrich_async(self, authoritative: Sequence[Any]) -> EnrichmentReport:
        report = EnrichmentReport()
        anchors, report.invalid_skipped = parse_records(authoritative, "authoritative")

        found: dict[int, list[RawCandidateRecord]] = {}
        to_fetch = []
        for index, anchor in enumerate(anchors):
            cached = self.cache.get(anchor.key)
            if cached is not None:
                found[index] = cached
                report.cache_hits += 1
            else:
                to_fetch.append((index, anchor))

        async def fetch_one(item):
            _, anchor = item
            payloads = await self.fetch(anchor)
            return self.to_candidates(anchor, payloads)

        def store_batch(outcomes: list[ItemOutcome]):
            for outcome in outcomes:
                index, anchor = outcome.item
                if not outcome.ok:
                    logger.warning(f"Fetch failed for {anchor.name}: {outcome.error}")
                    report.failed += 1
                    continue
                candidates, invalid = outcome.value
                report.invalid_skipped += invalid
                report.fetched += 1
                self.cache.set(anchor.key, candidates)
                found[index] = candidates

        if to_fetch:
            await self.orchestrator.process_batches(to_fetch, fetch_one, on_batch=store_batch)

        for index in sorted(found):
            for candidate in found[index]:
                if candidate.extraction_confidence >= self.min_confidence:
                    report.candidates.append(candidate)
                else:
                    report.discarded += 1

        report.log_summary()
        return report

    def enrich(self, authoritative: Sequence[Any]) -> EnrichmentReport:
        """Synchronous wrapper around enrich_async()."""
        return asyncio.run(self.enrich_async(authoritative))
