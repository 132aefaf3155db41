"""
Core data model for the clinical evidence pipeline.

Study records flow through three shapes:
- NormalizedStudy: immutable record emitted by a source adapter
- UnifiedStudy: canonical form with study type, evidence level and clamped scores
- StudyDetails / ExclusionDetail: screening decisions appended to the screening log

SearchFilters is a pydantic model so that caller input errors surface as
validation errors before any adapter is called.
"""

import re
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from clinical_evidence import config


class StudyType(Enum):
    SYSTEMATIC_REVIEW = "Systematic Review"
    RCT = "RCT"
    COHORT_STUDY = "Cohort Study"
    CASE_CONTROL_STUDY = "Case-Control Study"
    CASE_SERIES = "Case Series"
    OTHER = "Other"


EVIDENCE_LEVELS = {
    StudyType.SYSTEMATIC_REVIEW: 1,
    StudyType.RCT: 2,
    StudyType.COHORT_STUDY: 3,
    StudyType.CASE_CONTROL_STUDY: 4,
    StudyType.CASE_SERIES: 5,
    StudyType.OTHER: 5,
}


class ExclusionReason(Enum):
    NOT_TARGET_POPULATION = "not_target_population"
    OUTSIDE_DATE_RANGE = "outside_date_range"
    INSUFFICIENT_DATA = "insufficient_data"
    DUPLICATE = "duplicate"
    WRONG_STUDY_TYPE = "wrong_study_type"
    LANGUAGE_BARRIER = "language_barrier"
    POOR_QUALITY = "poor_quality"
    NOT_RELEVANT = "not_relevant"
    PREDATORY_JOURNAL = "predatory_journal"
    RETRACTED = "retracted"


class MedicalDomain(Enum):
    CARDIOVASCULAR = "cardiovascular"
    ENDOCRINOLOGY = "endocrinology"
    PSYCHIATRY = "psychiatry"
    ONCOLOGY = "oncology"
    NEUROLOGY = "neurology"
    INFECTIOUS_DISEASE = "infectious_disease"
    EMERGENCY_MEDICINE = "emergency_medicine"
    PUBLIC_HEALTH = "public_health"
    ALL = "ALL"


# Ordered most-specific first; "meta-analysis" must win over "randomized".
_STUDY_TYPE_CUES: List[Tuple[StudyType, Tuple[str, ...]]] = [
    (StudyType.SYSTEMATIC_REVIEW, ("systematic review", "systematic-review", "meta-analysis",
                                   "meta analysis", "cochrane review", "pooled analysis")),
    (StudyType.RCT, ("randomized", "randomised", "rct", "clinical trial", "controlled trial")),
    (StudyType.COHORT_STUDY, ("cohort", "longitudinal", "prospective study")),
    (StudyType.CASE_CONTROL_STUDY, ("case-control", "case control")),
    (StudyType.CASE_SERIES, ("case series", "case report", "case-report")),
]


def classify_study_type(text: str) -> StudyType:
    """Map a free-text study type (or title/abstract text) onto the canonical enum."""
    if not text:
        return StudyType.OTHER
    for member in StudyType:
        if text == member.value:
            return member
    lowered = text.lower()
    for study_type, cues in _STUDY_TYPE_CUES:
        for cue in cues:
            if len(cue) <= 4:
                if re.search(rf"\b{re.escape(cue)}\b", lowered):
                    return study_type
            elif cue in lowered:
                return study_type
    return StudyType.OTHER


def evidence_level_for(study_type: StudyType) -> int:
    return EVIDENCE_LEVELS.get(study_type, 5)


def clamp_score(value: Optional[float]) -> float:
    """Clamp a score into [0, 100]; missing scores fall to 0."""
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, value))


_DATE_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})"), 3),
    (re.compile(r"^(\d{4})-(\d{1,2})$"), 2),
    (re.compile(r"^(\d{4})$"), 1),
)


def parse_publication_date(value: Any) -> Optional[date]:
    """Parse the loose date strings returned by literature APIs.

    Accepts ISO dates/datetimes, "YYYY-MM" and bare years. Partial dates
    resolve to the first day of the period. Returns None when unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for pattern, parts in _DATE_PATTERNS:
        m = pattern.match(text)
        if not m:
            continue
        try:
            year = int(m.group(1))
            month = int(m.group(2)) if parts >= 2 else 1
            day = int(m.group(3)) if parts >= 3 else 1
            return date(year, month, day)
        except ValueError:
            return None
    m = re.search(r"\b(19|20)\d{2}\b", text)
    if m:
        return date(int(m.group(0)), 1, 1)
    return None


# ---------------------------------------------------------------------------
# Study records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class NormalizedStudy:
    """A study record as emitted by one source adapter."""
    id: str                              # DOI preferred, else source-local id
    title: str
    source: str                          # "PLOS", "BMC", "TRIP", "PubMed"
    abstract: str = ""
    authors: Tuple[str, ...] = ()
    journal: str = ""
    publication_date: str = ""
    url: str = ""
    raw_study_type: str = ""
    doi: str = ""
    pmid: str = ""
    quality_score: float = 0.0           # adapter-computed signal, clamped on conversion
    relevance_score: float = 0.0
    is_open_access: bool = False
    has_full_text: bool = False
    subjects: Tuple[str, ...] = ()
    citation_count: Optional[int] = None
    impact_factor: Optional[float] = None


@dataclass(frozen=True)
class SourceResult:
    """Tagged adapter output: which database produced which records."""
    source: str
    payload: Tuple[NormalizedStudy, ...] = ()

    def __len__(self):
        return len(self.payload)


@dataclass
class UnifiedStudy:
    """Canonical study record used by screening, assessment and synthesis."""
    id: str
    title: str
    abstract: str
    authors: List[str]
    journal: str
    publication_date: str
    url: str
    database: str
    raw_study_type: str
    study_type: StudyType
    quality_score: float
    relevance_score: float
    is_open_access: bool
    has_full_text: bool = False
    subjects: List[str] = field(default_factory=list)
    doi: str = ""
    pmid: str = ""
    citation_count: Optional[int] = None
    impact_factor: Optional[float] = None
    bias_assessment: Optional[Any] = None   # StudyQualityReport once assessed

    def __post_init__(self):
        self.quality_score = clamp_score(self.quality_score)
        self.relevance_score = clamp_score(self.relevance_score)
        seen = set()
        subjects = []
        for s in self.subjects:
            if s and s not in seen:
                seen.add(s)
                subjects.append(s)
        self.subjects = subjects

    @property
    def evidence_level(self) -> int:
        return evidence_level_for(self.study_type)

    @property
    def published(self) -> Optional[date]:
        return parse_publication_date(self.publication_date)

    @classmethod
    def from_normalized(cls, record: NormalizedStudy) -> "UnifiedStudy":
        study_type = classify_study_type(record.raw_study_type)
        if study_type is StudyType.OTHER and not record.raw_study_type:
            study_type = classify_study_type(f"{record.title} {record.abstract}")
        return cls(
            id=record.id or record.doi or record.pmid or record.title,
            title=record.title,
            abstract=record.abstract,
            authors=list(record.authors),
            journal=record.journal,
            publication_date=record.publication_date,
            url=record.url,
            database=record.source,
            raw_study_type=record.raw_study_type,
            study_type=study_type,
            quality_score=record.quality_score,
            relevance_score=record.relevance_score,
            is_open_access=record.is_open_access,
            has_full_text=record.has_full_text,
            subjects=list(record.subjects),
            doi=record.doi,
            pmid=record.pmid,
            citation_count=record.citation_count,
            impact_factor=record.impact_factor,
        )

    def to_dict(self) -> dict:
        d = to_jsonable(self)
        d["evidence_level"] = self.evidence_level
        return d


@dataclass(frozen=True)
class StudyDetails:
    """Screening-log record of an included study."""
    id: str
    title: str
    authors: Tuple[str, ...]
    journal: str
    publication_date: str
    study_type: str
    evidence_level: int
    quality_score: float
    relevance_score: float
    database: str
    doi: str = ""
    pmid: str = ""
    is_open_access: bool = False

    @classmethod
    def from_study(cls, study: UnifiedStudy) -> "StudyDetails":
        return cls(
            id=study.id,
            title=study.title,
            authors=tuple(study.authors),
            journal=study.journal,
            publication_date=study.publication_date,
            study_type=study.study_type.value,
            evidence_level=study.evidence_level,
            quality_score=study.quality_score,
            relevance_score=study.relevance_score,
            database=study.database,
            doi=study.doi,
            pmid=study.pmid,
            is_open_access=study.is_open_access,
        )


@dataclass(frozen=True)
class ExclusionDetail:
    """Screening-log record of an excluded study and the rule that rejected it."""
    id: str
    title: str
    authors: Tuple[str, ...]
    exclusion_reason: ExclusionReason
    reason_details: str
    database: str
    journal: str = ""
    publication_date: str = ""
    doi: str = ""
    pmid: str = ""

    @classmethod
    def from_study(cls, study: UnifiedStudy, reason: ExclusionReason, details: str) -> "ExclusionDetail":
        return cls(
            id=study.id,
            title=study.title,
            authors=tuple(study.authors),
            exclusion_reason=reason,
            reason_details=details,
            database=study.database,
            journal=study.journal,
            publication_date=study.publication_date,
            doi=study.doi,
            pmid=study.pmid,
        )


# ---------------------------------------------------------------------------
# Caller-facing filters
# ---------------------------------------------------------------------------
class DateRange(BaseModel):
    """Inclusive publication date window."""
    start: date
    end: date

    @model_validator(mode="after")
    def _start_before_end(self):
        if self.start > self.end:
            raise ValueError(f"date range start {self.start} is after end {self.end}")
        return self


class SearchFilters(BaseModel):
    """Filters accepted by EvidencePipeline.comprehensive_search."""
    date_range: Optional[DateRange] = None
    study_types: Optional[List[StudyType]] = None
    evidence_levels: Optional[List[int]] = None
    max_results: int = Field(default=config.DEFAULT_MAX_RESULTS, gt=0, le=1000)
    require_open_access: bool = True
    medical_domain: MedicalDomain = MedicalDomain.ALL
    include_screening_log: bool = True
    include_bias_assessment: bool = True
    optimize_patient_language: bool = True

    @field_validator("evidence_levels")
    @classmethod
    def _levels_in_range(cls, levels):
        if levels is None:
            return levels
        bad = [lvl for lvl in levels if lvl < 1 or lvl > 5]
        if bad:
            raise ValueError(f"evidence levels must be between 1 and 5, got {bad}")
        return levels


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def to_jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses, enums, dates and pydantic models to JSON types."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, dict):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [to_jsonable(v) for v in obj]
    return obj


# ---------------------------------------------------------------------------
# Journal tiers (shared by source scoring and screening-log metrics)
# ---------------------------------------------------------------------------
HIGH_IMPACT_JOURNALS = (
    "new england journal of medicine", "lancet", "jama", "nature", "science",
    "nature medicine", "cochrane database", "bmj", "annals of internal medicine",
)
MEDIUM_IMPACT_JOURNALS = (
    "circulation", "journal of the american college of cardiology",
    "diabetes care", "american journal", "european heart journal",
)
OPEN_ACCESS_JOURNALS = ("plos", "bmc", "frontiers", "nature communications")


def journal_tier(journal: str) -> str:
    """Classify a journal name as High Impact, Medium Impact, Open Access or Standard."""
    name = (journal or "").lower()
    if any(j in name for j in HIGH_IMPACT_JOURNALS):
        return "High Impact"
    if any(j in name for j in MEDIUM_IMPACT_JOURNALS):
        return "Medium Impact"
    if any(j in name for j in OPEN_ACCESS_JOURNALS):
        return "Open Access"
    return "Standard"
