"""
Retrieval orchestrator: concurrent fan-out to the source adapters.

One task per adapter, each under its own timeout. A failing, slow or
rate-limited adapter contributes an empty result and a failed DatabaseQuery
entry; it never aborts sibling calls. Surviving records are converted to
UnifiedStudy and deduplicated by normalized DOI, else by normalized title.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from clinical_evidence import config
from clinical_evidence.models import SourceResult, UnifiedStudy
from clinical_evidence.research.screening_log import DatabaseQuery, ScreeningLogStore
from clinical_evidence.research.source_clients import AdapterFilters, RateLimitExceeded

logger = logging.getLogger(__name__)


class SourceAdapter(Protocol):
    SOURCE: str

    async def search(self, query: str, filters: Optional[AdapterFilters] = None) -> SourceResult:
        ...


@dataclass
class RetrievalOutcome:
    studies: List[UnifiedStudy] = field(default_factory=list)   # deduplicated, arrival order
    results: List[SourceResult] = field(default_factory=list)
    queries: List[DatabaseQuery] = field(default_factory=list)
    duplicates_removed: int = 0

    @property
    def total_retrieved(self) -> int:
        return sum(len(r) for r in self.results)

    @property
    def response_time_ms(self) -> float:
        return sum(q.response_time_ms for q in self.queries)


def normalize_doi(doi: str) -> str:
    d = (doi or "").strip().lower()
    for prefix in ("https://doi.org/", "http://doi.org/", "https://dx.doi.org/", "http://dx.doi.org/", "doi:"):
        if d.startswith(prefix):
            d = d[len(prefix):]
    return d


def normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", (title or "").strip().lower())


def dedup_key(study: UnifiedStudy) -> str:
    doi = normalize_doi(study.doi)
    if doi:
        return f"doi:{doi}"
    return f"title:{normalize_title(study.title)}"


def dedup_studies(studies: List[UnifiedStudy]) -> Tuple[List[UnifiedStudy], int]:
    """Keep the first occurrence of each DOI/title; returns (unique, dropped count)."""
    seen = set()
    unique = []
    for s in studies:
        key = dedup_key(s)
        if key in seen:
            continue
        seen.add(key)
        unique.append(s)
    return unique, len(studies) - len(unique)


class RetrievalOrchestrator:
    """Run one search per adapter concurrently and merge the results."""

    def __init__(self, adapters: Dict[str, SourceAdapter], store: Optional[ScreeningLogStore] = None,
                 timeout: float = config.ADAPTER_TIMEOUT):
        self.adapters = adapters
        self.store = store
        self.timeout = timeout

    def per_adapter_budget(self, max_results: int) -> int:
        return max(max_results // max(len(self.adapters), 1), 1)

    async def _run_adapter(self, name: str, adapter: SourceAdapter, query: str,
                           filters: AdapterFilters) -> Tuple[SourceResult, DatabaseQuery]:
        started = time.monotonic()
        timestamp = datetime.now(timezone.utc).isoformat()
        error = None
        try:
            result = await asyncio.wait_for(adapter.search(query, filters), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout:.0f}s"
            result = SourceResult(name)
        except RateLimitExceeded as e:
            error = str(e)
            result = SourceResult(name)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            result = SourceResult(name)

        elapsed_ms = (time.monotonic() - started) * 1000
        if error:
            logger.warning(f"{name} adapter failed: {error}")
        else:
            logger.info(f"{name}: {len(result)} results in {elapsed_ms:.0f}ms")
        record = DatabaseQuery(
            database=name,
            query=query,
            filters=filters.to_dict(),
            results_count=len(result),
            timestamp=timestamp,
            response_time_ms=elapsed_ms,
            error=error,
        )
        return result, record

    async def retrieve(self, query: str, filters: AdapterFilters,
                       query_id: Optional[str] = None) -> RetrievalOutcome:
        """Fan out, log every call under query_id, and return deduplicated studies."""
        pairs = await asyncio.gather(*(
            self._run_adapter(name, adapter, query, filters)
            for name, adapter in self.adapters.items()
        ))

        outcome = RetrievalOutcome()
        candidates = []
        for result, record in pairs:
            outcome.results.append(result)
            outcome.queries.append(record)
            if self.store is not None and query_id is not None:
                self.store.add_search_query(query_id, record)
            candidates.extend(UnifiedStudy.from_normalized(r) for r in result.payload)

        outcome.studies, outcome.duplicates_removed = dedup_studies(candidates)
        if outcome.duplicates_removed:
            logger.info(f"Removed {outcome.duplicates_removed} duplicate records")
        return outcome
