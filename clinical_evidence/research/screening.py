"""
Rule-based study screening.

Rules run in a fixed order and short-circuit: the first rule a study fails
is its recorded exclusion reason.

    1. publication date inside the requested range
    2. study type in the allowed types
    3. evidence level in the allowed levels
    4. open access, when required
    5. quality score >= 40
    6. relevance score >= 30
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from clinical_evidence import config
from clinical_evidence.models import (
    ExclusionDetail,
    ExclusionReason,
    SearchFilters,
    StudyDetails,
    UnifiedStudy,
)
from clinical_evidence.research.screening_log import ScreeningLogStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreeningDecision:
    included: bool
    reason: Optional[ExclusionReason] = None
    details: str = "Study meets all screening criteria"


@dataclass
class ScreeningResult:
    included: List[UnifiedStudy] = field(default_factory=list)
    excluded: List[ExclusionDetail] = field(default_factory=list)


def _exclude(reason: ExclusionReason, details: str) -> ScreeningDecision:
    return ScreeningDecision(included=False, reason=reason, details=details)


def screen_study(study: UnifiedStudy, filters: SearchFilters) -> ScreeningDecision:
    """Apply the ordered rule chain to one study."""
    if filters.date_range:
        start, end = filters.date_range.start, filters.date_range.end
        published = study.published
        if published is None or not (start <= published <= end):
            shown = study.publication_date or "unknown"
            return _exclude(ExclusionReason.OUTSIDE_DATE_RANGE,
                            f"Study date {shown} outside range {start.isoformat()} to {end.isoformat()}")

    if filters.study_types:
        if study.study_type not in filters.study_types:
            allowed = ", ".join(t.value for t in filters.study_types)
            return _exclude(ExclusionReason.WRONG_STUDY_TYPE,
                            f"Study type {study.study_type.value} not in allowed types: {allowed}")

    if filters.evidence_levels:
        if study.evidence_level not in filters.evidence_levels:
            allowed = ", ".join(str(lvl) for lvl in filters.evidence_levels)
            return _exclude(ExclusionReason.WRONG_STUDY_TYPE,
                            f"Evidence level {study.evidence_level} not in allowed levels: {allowed}")

    if filters.require_open_access and not study.is_open_access:
        return _exclude(ExclusionReason.NOT_RELEVANT, "Open access required but study is not open access")

    if study.quality_score < config.QUALITY_THRESHOLD:
        return _exclude(ExclusionReason.POOR_QUALITY,
                        f"Quality score {study.quality_score:g} below threshold of {config.QUALITY_THRESHOLD}")

    if study.relevance_score < config.RELEVANCE_THRESHOLD:
        return _exclude(ExclusionReason.NOT_RELEVANT,
                        f"Relevance score {study.relevance_score:g} below threshold of {config.RELEVANCE_THRESHOLD}")

    return ScreeningDecision(included=True)


def screen_studies(studies: List[UnifiedStudy], filters: SearchFilters,
                   store: Optional[ScreeningLogStore] = None,
                   query_id: Optional[str] = None) -> ScreeningResult:
    """Screen studies in input order, appending each decision to the query's log."""
    result = ScreeningResult()
    log_decisions = store is not None and query_id is not None
    for study in studies:
        decision = screen_study(study, filters)
        if decision.included:
            result.included.append(study)
            if log_decisions:
                store.add_included(query_id, StudyDetails.from_study(study))
        else:
            detail = ExclusionDetail.from_study(study, decision.reason, decision.details)
            result.excluded.append(detail)
            if log_decisions:
                store.add_excluded(query_id, detail)
    logger.info(f"Screening: {len(result.included)} included, {len(result.excluded)} excluded")
    return result
