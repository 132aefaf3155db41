#!/usr/bin/env python3
"""
Clinical evidence pipeline.

Query expansion -> concurrent retrieval -> screening -> bias assessment ->
meta-analysis -> GRADE -> patient summary -> gap analysis.

Usage:
    python -m clinical_evidence --query "aspirin cardiovascular prevention"
"""

import argparse
import asyncio
import json
import logging
import random
import string
import sys
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from clinical_evidence import config
from clinical_evidence.models import (
    ExclusionDetail,
    SearchFilters,
    UnifiedStudy,
    to_jsonable,
)
from clinical_evidence.research.bias_assessment import BiasAssessor, StudyQualityReport
from clinical_evidence.research.evidence_gaps import (
    EvidenceGap,
    generate_recommendations,
    identify_evidence_gaps,
)
from clinical_evidence.research.grade import GRADEAssessment, generate_grade_summary, grade_evidence
from clinical_evidence.research.meta_analysis import MetaAnalysisResult, perform_meta_analysis
from clinical_evidence.research.patient_language import PatientLanguageOptimizer, build_patient_summary
from clinical_evidence.research.query_expansion import MedicalVocabulary, expand_medical_query, load_vocabulary
from clinical_evidence.research.retrieval import RetrievalOrchestrator, RetrievalOutcome, SourceAdapter
from clinical_evidence.research.screening import screen_studies
from clinical_evidence.research.screening_log import (
    QUERY_EXPANSION,
    DatabaseQuery,
    ScreeningLog,
    ScreeningLogStore,
)
from clinical_evidence.research.source_clients import AdapterFilters, default_clients

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_query_id() -> str:
    """query_<epoch ms>_<9 base-36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"query_{int(time.time() * 1000)}_{suffix}"


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class DatabasePerformance:
    coverage: Dict[str, int] = field(default_factory=dict)              # records returned per database
    response_time_ms: float = 0.0
    inclusion_rate: Dict[str, float] = field(default_factory=dict)      # % of retrieved that were included
    average_quality: Dict[str, float] = field(default_factory=dict)     # mean quality of included records
    open_access_rate: Dict[str, float] = field(default_factory=dict)    # % of included records open access
    failed_databases: List[str] = field(default_factory=list)


@dataclass
class EvidenceSearchResult:
    query: str
    query_id: str
    total_retrieved: int = 0
    included_studies: List[UnifiedStudy] = field(default_factory=list)
    excluded_studies: List[ExclusionDetail] = field(default_factory=list)
    screening_log: Optional[ScreeningLog] = None
    quality_reports: Optional[List[StudyQualityReport]] = None
    meta_analysis_results: Optional[List[MetaAnalysisResult]] = None
    patient_summary: Optional[str] = None
    grade_assessment: Optional[GRADEAssessment] = None
    database_performance: DatabasePerformance = field(default_factory=DatabasePerformance)
    recommendations: List[str] = field(default_factory=list)
    evidence_gaps: List[EvidenceGap] = field(default_factory=list)
    expanded_query: str = ""
    duplicates_removed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = to_jsonable(self)
        d["included_studies"] = [s.to_dict() for s in self.included_studies]
        if self.grade_assessment is not None:
            d["grade_summary"] = generate_grade_summary(self.grade_assessment)
        return d


def measure_database_performance(outcome: RetrievalOutcome, included: List[UnifiedStudy]) -> DatabasePerformance:
    perf = DatabasePerformance(response_time_ms=outcome.response_time_ms)
    for result in outcome.results:
        perf.coverage[result.source] = len(result)
    perf.failed_databases = [q.database for q in outcome.queries if q.error]

    for db, retrieved in perf.coverage.items():
        mine = [s for s in included if s.database == db]
        perf.inclusion_rate[db] = len(mine) / retrieved * 100 if retrieved else 0.0
        perf.average_quality[db] = sum(s.quality_score for s in mine) / len(mine) if mine else 0.0
        perf.open_access_rate[db] = sum(1 for s in mine if s.is_open_access) / len(mine) * 100 if mine else 0.0
    return perf


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "filters"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


# ──────────────────────────────────────────────────────────────
# Pipeline
# ──────────────────────────────────────────────────────────────

class EvidencePipeline:
    """Owns the adapters, the screening log store and the assessment components."""

    def __init__(self, adapters: Optional[Dict[str, SourceAdapter]] = None,
                 store: Optional[ScreeningLogStore] = None,
                 assessor: Optional[BiasAssessor] = None,
                 vocabulary: Optional[MedicalVocabulary] = None,
                 optimizer: Optional[PatientLanguageOptimizer] = None,
                 adapter_timeout: float = config.ADAPTER_TIMEOUT,
                 clock: Optional[Callable[[], date]] = None):
        self.adapters = adapters if adapters is not None else default_clients()
        # An empty store is falsy (__len__), so compare with None
        self.store = store if store is not None else ScreeningLogStore()
        self.assessor = assessor if assessor is not None else BiasAssessor()
        self.vocabulary = vocabulary if vocabulary is not None else load_vocabulary()
        self.optimizer = optimizer if optimizer is not None else PatientLanguageOptimizer()
        self.orchestrator = RetrievalOrchestrator(self.adapters, store=self.store, timeout=adapter_timeout)
        # Search date drives the recency clause and gap analysis; one read per search
        self._clock = clock if clock is not None else _utc_today

    def _error_result(self, query: str, query_id: str, message: str) -> EvidenceSearchResult:
        logger.warning(f"Rejected search {query_id}: {message}")
        return EvidenceSearchResult(
            query=query or "",
            query_id=query_id,
            error=message,
            recommendations=[f"Search could not be run: {message}",
                             "Correct the query or filters and try again"],
        )

    def _check_query(self, query: Any) -> Optional[str]:
        if not isinstance(query, str) or not query.strip():
            return "query must be a non-empty string"
        if len(query) > config.MAX_QUERY_LENGTH:
            return f"query exceeds {config.MAX_QUERY_LENGTH} characters"
        return None

    async def comprehensive_search(self, query: str,
                                   filters: Union[SearchFilters, Dict[str, Any], None] = None) -> EvidenceSearchResult:
        """Run the full evidence pipeline for one clinical question.

        Caller input errors (bad query or filters) come back as a result with
        `error` set. Adapter failures only reduce what is retrieved.
        """
        query_id = generate_query_id()

        problem = self._check_query(query)
        if problem:
            return self._error_result(query, query_id, problem)
        try:
            if filters is None:
                filters = SearchFilters()
            elif not isinstance(filters, SearchFilters):
                filters = SearchFilters.model_validate(filters)
        except ValidationError as e:
            return self._error_result(query, query_id, _validation_message(e))

        query = query.strip()
        logger.info(f"[{query_id}] Original query: {query}")
        search_date = self._clock()
        expanded = expand_medical_query(query, self.vocabulary, reference_year=search_date.year)
        logger.info(f"[{query_id}] Expanded query: {expanded}")

        self.store.create(query_id)
        try:
            return await self._run_search(query, query_id, expanded, filters, search_date)
        finally:
            self.store.complete(query_id)

    async def _run_search(self, query: str, query_id: str, expanded: str,
                          filters: SearchFilters, search_date: date) -> EvidenceSearchResult:
        self.store.add_search_query(query_id, DatabaseQuery(
            database=QUERY_EXPANSION,
            query=expanded,
            filters={"original_query": query},
            results_count=0,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ))
        if filters.date_range:
            self.store.set_date_range(query_id, filters.date_range.start.isoformat(),
                                      filters.date_range.end.isoformat())

        adapter_filters = AdapterFilters(
            max_results=self.orchestrator.per_adapter_budget(filters.max_results),
            date_range=filters.date_range,
            domain=filters.medical_domain,
            open_access_only=filters.require_open_access,
            scoring_query=query,
        )
        outcome = await self.orchestrator.retrieve(expanded, adapter_filters, query_id=query_id)
        logger.info(f"[{query_id}] Retrieved {outcome.total_retrieved} records "
                    f"({', '.join(f'{r.source}: {len(r)}' for r in outcome.results)})")

        screening = screen_studies(outcome.studies, filters, store=self.store, query_id=query_id)
        included = screening.included

        quality_reports = None
        if filters.include_bias_assessment:
            quality_reports = []
            for study in included:
                report = self.assessor.assess(study)
                study.bias_assessment = report
                quality_reports.append(report)

        meta_results = perform_meta_analysis(included)
        pooled = meta_results[0] if meta_results else None
        grade = grade_evidence(
            [s.study_type.value for s in included],
            [r.overall_quality for r in quality_reports or []],
            i_squared=pooled.i_squared if pooled else None,
            ci_crosses_null=(not pooled.significant) if pooled else None,
        )

        summary = build_patient_summary(included, query)
        if filters.optimize_patient_language:
            summary = self.optimizer.simplify_for_patients(summary).simplified_text

        gaps = identify_evidence_gaps(included, query, self.vocabulary, today=search_date)
        recommendations = generate_recommendations(included, gaps, query, self.vocabulary,
                                                   today=search_date)

        logger.info(f"[{query_id}] {len(included)} included, {len(screening.excluded)} excluded, "
                    f"{len(gaps)} evidence gaps, GRADE {grade.confidence.label}")
        return EvidenceSearchResult(
            query=query,
            query_id=query_id,
            total_retrieved=outcome.total_retrieved,
            included_studies=included,
            excluded_studies=screening.excluded,
            screening_log=self.store.get(query_id) if filters.include_screening_log else None,
            quality_reports=quality_reports,
            meta_analysis_results=meta_results,
            patient_summary=summary,
            grade_assessment=grade,
            database_performance=measure_database_performance(outcome, included),
            recommendations=recommendations,
            evidence_gaps=gaps,
            expanded_query=expanded,
            duplicates_removed=outcome.duplicates_removed,
        )

    def get_screening_report(self, query_id: str) -> str:
        return self.store.generate_report(query_id)

    def get_performance_statistics(self) -> Dict[str, Any]:
        return self.store.statistics()


# ──────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────

def setup_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command-line arguments for the evidence search."""
    parser = argparse.ArgumentParser(
        description='Search open-access literature databases and synthesize the clinical evidence.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m clinical_evidence --query "aspirin cardiovascular prevention"
  python -m clinical_evidence --query "SGLT2 inhibitors heart failure" --study-type RCT --evidence-level 1 2
  python -m clinical_evidence --query "depression CBT" --start 2020-01-01 --end 2024-12-31 --json

Environment variables:
  SPRINGER_API_KEY   enables the BMC adapter
  TRIP_API_KEY       enables the TRIP adapter
  PUBMED_API_KEY     raises the PubMed quota
        """
    )
    parser.add_argument(
        '--query',
        type=str,
        required=True,
        help='Clinical question to search for'
    )
    parser.add_argument(
        '--max-results',
        type=int,
        default=config.DEFAULT_MAX_RESULTS,
        help='Maximum records to retrieve across all databases'
    )
    parser.add_argument('--start', type=str, help='Earliest publication date (YYYY-MM-DD)')
    parser.add_argument('--end', type=str, help='Latest publication date (YYYY-MM-DD)')
    parser.add_argument(
        '--study-type',
        nargs='+',
        help='Allowed study types, e.g. "Systematic Review" RCT "Cohort Study"'
    )
    parser.add_argument(
        '--evidence-level',
        nargs='+',
        type=int,
        help='Allowed evidence levels (1-5)'
    )
    parser.add_argument(
        '--domain',
        type=str,
        default='ALL',
        help='Medical domain used to pick BMC journals (e.g. cardiovascular, oncology)'
    )
    parser.add_argument(
        '--no-open-access',
        action='store_true',
        help='Also include studies that are not open access'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the full result as JSON'
    )
    return parser.parse_args(argv)


def filters_from_args(args) -> Dict[str, Any]:
    filters: Dict[str, Any] = {
        "max_results": args.max_results,
        "require_open_access": not args.no_open_access,
        "medical_domain": args.domain,
    }
    if args.start or args.end:
        filters["date_range"] = {"start": args.start or "1900-01-01",
                                 "end": args.end or datetime.now().date().isoformat()}
    if args.study_type:
        filters["study_types"] = args.study_type
    if args.evidence_level:
        filters["evidence_levels"] = args.evidence_level
    return filters


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    setup_logging()

    pipeline = EvidencePipeline()
    result = asyncio.run(pipeline.comprehensive_search(args.query, filters_from_args(args)))

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 1 if result.error else 0

    if result.error:
        print(f"ERROR: {result.error}")
        return 1

    print(f"\n{'='*70}")
    print(f"Query: {result.query}")
    print(f"Retrieved {result.total_retrieved}, included {len(result.included_studies)}, "
          f"excluded {len(result.excluded_studies)}")
    print(f"{'='*70}\n")
    for rec in result.recommendations:
        print(rec)
    if result.grade_assessment is not None:
        print()
        print(generate_grade_summary(result.grade_assessment))
    if result.patient_summary:
        print()
        print(result.patient_summary)
    print()
    print(pipeline.get_screening_report(result.query_id))
    return 0


if __name__ == "__main__":
    sys.exit(main())
