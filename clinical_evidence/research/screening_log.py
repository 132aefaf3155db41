"""
Auditable screening log per query.

Each query id owns one ScreeningLog: every database call issued, every
inclusion and exclusion decision, and quality metrics recomputed as studies
are included. ScreeningLogStore holds logs for concurrent queries behind a
lock, with age-based retention and a cap on stored logs.
"""

import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from clinical_evidence import config
from clinical_evidence.models import (
    OPEN_ACCESS_JOURNALS,
    ExclusionDetail,
    ExclusionReason,
    StudyDetails,
    journal_tier,
)

logger = logging.getLogger(__name__)

QUERY_EXPANSION = "QUERY_EXPANSION"
OPEN_ACCESS_DATABASES = ("PMC", "DOAJ", "PLOS", "BMC")

EXCLUSION_LABELS = {
    ExclusionReason.NOT_TARGET_POPULATION: "Population mismatch",
    ExclusionReason.OUTSIDE_DATE_RANGE: "Outside date range",
    ExclusionReason.INSUFFICIENT_DATA: "Insufficient data",
    ExclusionReason.DUPLICATE: "Duplicate study",
    ExclusionReason.WRONG_STUDY_TYPE: "Wrong study type",
    ExclusionReason.LANGUAGE_BARRIER: "Non-English language",
    ExclusionReason.POOR_QUALITY: "Poor quality/bias",
    ExclusionReason.NOT_RELEVANT: "Not relevant to query",
    ExclusionReason.PREDATORY_JOURNAL: "Predatory journal",
    ExclusionReason.RETRACTED: "Retracted publication",
}


@dataclass(frozen=True)
class DatabaseQuery:
    """One source call as issued, successful or not."""
    database: str
    query: str
    filters: Dict[str, Any]
    results_count: int
    timestamp: str
    response_time_ms: float = 0.0
    error: Optional[str] = None


@dataclass
class QualityMetrics:
    average_quality_score: float = 0.0
    evidence_level_distribution: Dict[int, int] = field(default_factory=dict)
    study_type_distribution: Dict[str, int] = field(default_factory=dict)
    journal_quality_distribution: Dict[str, int] = field(default_factory=dict)
    open_access_percentage: float = 0.0


@dataclass
class ScreeningLog:
    query_id: str
    total_papers: int = 0
    included_papers: List[StudyDetails] = field(default_factory=list)
    excluded_papers: List[ExclusionDetail] = field(default_factory=list)
    search_strategy: List[DatabaseQuery] = field(default_factory=list)
    date_range: Dict[str, str] = field(default_factory=lambda: {"start": "", "end": ""})
    database_distribution: Dict[str, int] = field(default_factory=dict)
    quality_metrics: QualityMetrics = field(default_factory=QualityMetrics)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed: bool = False             # set once the owning search has returned

    @property
    def inclusion_rate(self) -> float:
        if self.total_papers <= 0:
            return 0.0
        return len(self.included_papers) / self.total_papers * 100


def _is_open_access(paper: StudyDetails) -> bool:
    journal = paper.journal.lower()
    return (paper.is_open_access
            or any(j in journal for j in OPEN_ACCESS_JOURNALS)
            or paper.database in OPEN_ACCESS_DATABASES)


def compute_quality_metrics(papers: List[StudyDetails]) -> QualityMetrics:
    """Aggregate metrics over the included papers of one log."""
    if not papers:
        return QualityMetrics()
    journal_dist = {"High Impact": 0, "Medium Impact": 0, "Standard": 0, "Open Access": 0}
    for p in papers:
        journal_dist[journal_tier(p.journal)] += 1
    return QualityMetrics(
        average_quality_score=sum(p.quality_score for p in papers) / len(papers),
        evidence_level_distribution=dict(Counter(p.evidence_level for p in papers)),
        study_type_distribution=dict(Counter(p.study_type for p in papers)),
        journal_quality_distribution=journal_dist,
        open_access_percentage=sum(1 for p in papers if _is_open_access(p)) / len(papers) * 100,
    )


# ──────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────

class ScreeningLogStore:
    """Thread-safe map of query id -> ScreeningLog.

    Appending to an unknown query id raises KeyError. Creating a log beyond
    max_logs evicts the oldest completed logs; logs of searches still running
    are never evicted, so the store can briefly hold more than max_logs.
    """

    def __init__(self, max_logs: int = config.MAX_STORED_LOGS):
        self.max_logs = max_logs
        self._logs: "OrderedDict[str, ScreeningLog]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._logs)

    def __contains__(self, query_id: str) -> bool:
        with self._lock:
            return query_id in self._logs

    def create(self, query_id: str) -> ScreeningLog:
        log = ScreeningLog(query_id=query_id)
        with self._lock:
            self._logs[query_id] = log
            self._logs.move_to_end(query_id)
            overflow = len(self._logs) - self.max_logs
            if overflow > 0:
                finished = [qid for qid, entry in self._logs.items() if entry.completed]
                for evicted in finished[:overflow]:
                    del self._logs[evicted]
                    logger.info(f"Screening log store full; evicted {evicted}")
        return log

    def complete(self, query_id: str) -> None:
        """Mark a log finished so it becomes eligible for eviction."""
        with self._lock:
            log = self._logs.get(query_id)
            if log is not None:
                log.completed = True

    def get(self, query_id: str) -> Optional[ScreeningLog]:
        with self._lock:
            return self._logs.get(query_id)

    def _require(self, query_id: str) -> ScreeningLog:
        log = self._logs.get(query_id)
        if log is None:
            raise KeyError(f"No screening log for query id {query_id}")
        return log

    def add_search_query(self, query_id: str, query: DatabaseQuery) -> None:
        with self._lock:
            log = self._require(query_id)
            log.search_strategy.append(query)
            if query.database == QUERY_EXPANSION:
                return
            log.database_distribution[query.database] = (
                log.database_distribution.get(query.database, 0) + query.results_count
            )
            log.total_papers += query.results_count

    def add_included(self, query_id: str, paper: StudyDetails) -> None:
        with self._lock:
            log = self._require(query_id)
            log.included_papers.append(paper)
            log.quality_metrics = compute_quality_metrics(log.included_papers)

    def add_excluded(self, query_id: str, paper: ExclusionDetail) -> None:
        with self._lock:
            self._require(query_id).excluded_papers.append(paper)

    def set_date_range(self, query_id: str, start: str = "", end: str = "") -> None:
        with self._lock:
            self._require(query_id).date_range = {"start": start or "", "end": end or ""}

    def clear_old_logs(self, retention_days: int = config.LOG_RETENTION_DAYS,
                       now: Optional[datetime] = None) -> int:
        """Drop logs created before the retention cutoff. Returns the number removed."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        with self._lock:
            stale = [qid for qid, log in self._logs.items() if log.completed and log.created_at < cutoff]
            for qid in stale:
                del self._logs[qid]
        if stale:
            logger.info(f"Cleared {len(stale)} screening logs older than {retention_days} days")
        return len(stale)

    def generate_report(self, query_id: str) -> str:
        log = self.get(query_id)
        if log is None:
            return "No screening log found"
        with self._lock:
            return format_screening_report(log)

    def statistics(self) -> Dict[str, Any]:
        """Cross-query screening statistics over every stored log."""
        with self._lock:
            logs = list(self._logs.values())
            if not logs:
                return {
                    "total_queries": 0,
                    "average_inclusion_rate": 0.0,
                    "common_exclusion_reasons": {},
                    "database_effectiveness": {},
                }
            reasons: Counter = Counter()
            included: Counter = Counter()
            retrieved: Counter = Counter()
            for log in logs:
                reasons.update(p.exclusion_reason.value for p in log.excluded_papers)
                included.update(p.database for p in log.included_papers)
                retrieved.update(log.database_distribution)
            rates = [log.inclusion_rate for log in logs]

        effectiveness = {}
        for db in set(included) | set(retrieved):
            effectiveness[db] = included[db] / retrieved[db] * 100 if retrieved[db] > 0 else 0.0
        return {
            "total_queries": len(logs),
            "average_inclusion_rate": sum(rates) / len(rates),
            "common_exclusion_reasons": dict(reasons),
            "database_effectiveness": effectiveness,
        }


# ──────────────────────────────────────────────────────────────
# Report
# ──────────────────────────────────────────────────────────────

def format_exclusion_reason(reason: ExclusionReason) -> str:
    return EXCLUSION_LABELS.get(reason, reason.value)


def format_screening_report(log: ScreeningLog) -> str:
    """Render a screening log as a markdown report."""
    metrics = log.quality_metrics
    lines = [
        "**Evidence Screening Log**",
        "",
        "**Search Overview:**",
        f"- Total Papers Retrieved: {log.total_papers}",
        f"- Papers Included: {len(log.included_papers)}",
        f"- Papers Excluded: {len(log.excluded_papers)}",
        f"- Inclusion Rate: {log.inclusion_rate:.1f}%",
        "",
        "**Database Distribution:**",
    ]
    lines += [f"- {db}: {count} papers" for db, count in log.database_distribution.items()]

    lines += ["", "**Search Strategy:**"]
    for q in log.search_strategy:
        line = f'- {q.database}: "{q.query}" ({q.results_count} results)'
        if q.error:
            line += f" [failed: {q.error}]"
        lines.append(line)

    lines += [
        "",
        "**Quality Metrics:**",
        f"- Average Quality Score: {metrics.average_quality_score:.1f}/100",
        f"- Open Access Coverage: {metrics.open_access_percentage:.1f}%",
        "",
        "**Evidence Level Distribution:**",
    ]
    lines += [f"- Level {level}: {count} studies"
              for level, count in sorted(metrics.evidence_level_distribution.items())]

    lines += ["", "**Study Type Distribution:**"]
    lines += [f"- {study_type}: {count} studies"
              for study_type, count in sorted(metrics.study_type_distribution.items(), key=lambda kv: -kv[1])]

    lines += ["", "**Excluded Studies:**"]
    lines += [f"- {p.title} ({p.database}): {format_exclusion_reason(p.exclusion_reason)}"
              for p in log.excluded_papers[:5]]
    if len(log.excluded_papers) > 5:
        lines.append(f"... and {len(log.excluded_papers) - 5} more")

    start = log.date_range.get("start") or "No limit"
    end = log.date_range.get("end") or "Present"
    lines += ["", f"**Date Range:** {start} to {end}"]
    return "\n".join(lines)
