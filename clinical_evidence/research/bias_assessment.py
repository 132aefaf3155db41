"""
Heuristic risk-of-bias and methodological quality assessment.

RCTs get a five-domain RoB 2 style profile; systematic reviews get a
12-item AMSTAR-2 style checklist. Both are keyword heuristics over the
study's title, abstract and any methods/results text supplied, so missing
text pushes ratings toward the conservative end.

Callers depend only on BiasAssessor.assess(study) -> StudyQualityReport,
which keeps the heuristic swappable.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from clinical_evidence.models import StudyType, UnifiedStudy

logger = logging.getLogger(__name__)


class BiasLevel(Enum):
    LOW = "Low"
    SOME_CONCERNS = "Some_concerns"
    HIGH = "High"


class AssessedType(Enum):
    RCT = "RCT"
    SYSTEMATIC_REVIEW = "SystematicReview"
    OBSERVATIONAL = "Observational"
    OTHER = "Other"


_BIAS_SEVERITY = {BiasLevel.LOW: 0, BiasLevel.SOME_CONCERNS: 1, BiasLevel.HIGH: 2}
_BIAS_POINTS = {BiasLevel.LOW: 20, BiasLevel.SOME_CONCERNS: 10, BiasLevel.HIGH: 0}
DEFAULT_QUALITY_SCORE = 50.0


# ──────────────────────────────────────────────────────────────
# Keyword cues
# ──────────────────────────────────────────────────────────────

RANDOMIZATION_CUES = ("randomized", "randomised", "random allocation", "random assignment",
                      "computer-generated", "random number", "block randomization", "stratified randomization")
CONCEALMENT_CUES = ("concealed allocation", "sealed envelope", "central randomization",
                    "pharmacy-controlled", "allocation concealment")
BLINDING_CUES = ("double-blind", "double-blinded", "triple-blind", "placebo-controlled",
                 "blinded investigator", "masked", "single-blind")
ITT_CUES = ("intention-to-treat", "intention to treat", "itt")
MISSING_DATA_CUES = ("missing data", "dropout", "withdrawal", "lost to follow-up", "attrition", "missing outcome")
IMPUTATION_CUES = ("imputation", "last observation carried forward", "locf",
                   "multiple imputation", "sensitivity analysis")
VALIDATED_OUTCOME_CUES = ("validated", "standardized", "objective outcome", "laboratory measure",
                          "biomarker", "mortality", "hospitalization")
BLINDED_ASSESSMENT_CUES = ("blinded outcome assessment", "masked outcome", "independent adjudication",
                           "blinded investigator")
PROTOCOL_CUES = ("protocol", "pre-specified", "primary endpoint", "secondary endpoint",
                 "statistical analysis plan", "registered")
REPORTING_CUES = ("all outcomes reported", "complete reporting", "trial registration",
                  "clinicaltrials.gov", "protocol published")

# AMSTAR-2 items: (field, text source, cues). "methods" = title+abstract+methods,
# "results" = title+abstract+results, "full" = title+abstract+full text.
AMSTAR_ITEMS = (
    ("protocol_registered", "methods", ("protocol registered", "prospero", "protocol published",
                                        "systematic review protocol", "pre-registered")),
    ("study_selection_duplicate", "methods", ("two reviewers", "independently", "duplicate selection",
                                              "two investigators", "inter-rater reliability")),
    ("comprehensive_search", "methods", ("comprehensive search", "multiple databases", "medline", "embase",
                                         "cochrane library", "search strategy", "systematic search")),
    ("grey_literature_search", "methods", ("grey literature", "gray literature", "conference abstracts",
                                           "thesis", "unpublished", "trial registries")),
    ("excluded_studies_list", "methods", ("excluded studies", "exclusion list")),
    ("study_characteristics", "results", ("study characteristics", "baseline characteristics",
                                          "study details", "participant characteristics")),
    ("risk_of_bias_assessed", "methods", ("risk of bias", "quality assessment", "cochrane risk of bias",
                                          "rob2", "newcastle-ottawa", "bias assessment")),
    ("risk_of_bias_reporting", "results", None),
    ("meta_analysis_methods", "methods", ("meta-analysis", "pooled analysis", "random effects",
                                          "fixed effects", "heterogeneity", "forest plot")),
    ("risk_of_bias_results", "results", None),
    ("publication_bias", "methods", ("publication bias", "funnel plot", "egger test", "begg test",
                                     "small study effects")),
    ("conflicts_of_interest", "full", ("conflict of interest", "competing interests",
                                       "financial disclosure", "funding source")),
)
CRITICAL_ITEMS = ("protocol_registered", "comprehensive_search", "risk_of_bias_assessed", "meta_analysis_methods")


def has_any(text: str, cues: Sequence[str]) -> bool:
    """True if any cue occurs in text; cues of four characters or fewer must match whole words."""
    for cue in cues:
        if len(cue) <= 4:
            if re.search(rf"\b{re.escape(cue)}\b", text):
                return True
        elif cue in text:
            return True
    return False


# ──────────────────────────────────────────────────────────────
# Result types
# ──────────────────────────────────────────────────────────────

@dataclass
class RoB2Assessment:
    randomization_process: BiasLevel
    deviations_from_intervention: BiasLevel
    missing_outcome_data: BiasLevel
    outcome_measurement: BiasLevel
    selection_of_results: BiasLevel
    overall_risk: BiasLevel
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def domains(self) -> List[BiasLevel]:
        return [self.randomization_process, self.deviations_from_intervention,
                self.missing_outcome_data, self.outcome_measurement, self.selection_of_results]


@dataclass
class AMSTAR2Assessment:
    protocol_registered: bool
    study_selection_duplicate: bool
    comprehensive_search: bool
    grey_literature_search: bool
    excluded_studies_list: bool
    study_characteristics: bool
    risk_of_bias_assessed: bool
    risk_of_bias_reporting: bool
    meta_analysis_methods: bool
    risk_of_bias_results: bool
    publication_bias: bool
    conflicts_of_interest: bool
    score: int = 0                       # items satisfied, 0-12
    overall_confidence: str = "Critically Low"
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def critical_met(self) -> int:
        return sum(1 for name in CRITICAL_ITEMS if getattr(self, name))


@dataclass
class StudyQualityReport:
    study_id: str
    study_type: AssessedType
    overall_quality: str                 # High | Moderate | Low | Very Low
    quality_score: float
    recommendations: List[str] = field(default_factory=list)
    rob2_assessment: Optional[RoB2Assessment] = None
    amstar2_assessment: Optional[AMSTAR2Assessment] = None


# ──────────────────────────────────────────────────────────────
# Assessor
# ──────────────────────────────────────────────────────────────

def worst_bias(levels: Sequence[BiasLevel]) -> BiasLevel:
    return max(levels, key=lambda lvl: _BIAS_SEVERITY[lvl]) if levels else BiasLevel.HIGH


def amstar_confidence(critical_met: int, score: int) -> str:
    if critical_met == 4 and score >= 10:
        return "High"
    if critical_met >= 3 and score >= 8:
        return "Moderate"
    if critical_met >= 2 and score >= 5:
        return "Low"
    return "Critically Low"


class BiasAssessor:
    """Keyword-heuristic RoB 2 / AMSTAR-2 assessor."""

    def detect_type(self, study: UnifiedStudy) -> AssessedType:
        if study.study_type is StudyType.SYSTEMATIC_REVIEW:
            return AssessedType.SYSTEMATIC_REVIEW
        if study.study_type is StudyType.RCT:
            return AssessedType.RCT
        text = f"{study.title} {study.abstract}".lower()
        if "systematic review" in text or "meta-analysis" in text:
            return AssessedType.SYSTEMATIC_REVIEW
        if has_any(text, ("randomized", "randomised", "rct")):
            return AssessedType.RCT
        if has_any(text, ("cohort", "case-control", "observational")):
            return AssessedType.OBSERVATIONAL
        return AssessedType.OTHER

    # --- RoB 2 domains ---

    @staticmethod
    def _pair_rating(first: bool, second: bool) -> BiasLevel:
        if first and second:
            return BiasLevel.LOW
        if first or second:
            return BiasLevel.SOME_CONCERNS
        return BiasLevel.HIGH

    def assess_rct(self, study: UnifiedStudy, methods: str = "", results: str = "") -> RoB2Assessment:
        methods_text = f"{study.title} {study.abstract} {methods}".lower()
        results_text = f"{study.title} {study.abstract} {results}".lower()

        if has_any(methods_text, RANDOMIZATION_CUES):
            randomization = (BiasLevel.LOW if has_any(methods_text, CONCEALMENT_CUES)
                             else BiasLevel.SOME_CONCERNS)
        else:
            randomization = BiasLevel.HIGH

        deviations = self._pair_rating(has_any(methods_text, BLINDING_CUES), has_any(methods_text, ITT_CUES))

        if not (study.abstract.strip() or results.strip()):
            missing = BiasLevel.HIGH
        elif has_any(results_text, IMPUTATION_CUES):
            missing = BiasLevel.LOW
        elif has_any(results_text, MISSING_DATA_CUES):
            missing = BiasLevel.HIGH
        else:
            missing = BiasLevel.SOME_CONCERNS

        measurement = self._pair_rating(has_any(methods_text, VALIDATED_OUTCOME_CUES),
                                        has_any(methods_text, BLINDED_ASSESSMENT_CUES))
        selection = self._pair_rating(has_any(methods_text, PROTOCOL_CUES), has_any(methods_text, REPORTING_CUES))

        overall = worst_bias([randomization, deviations, missing, measurement, selection])
        return RoB2Assessment(
            randomization_process=randomization,
            deviations_from_intervention=deviations,
            missing_outcome_data=missing,
            outcome_measurement=measurement,
            selection_of_results=selection,
            overall_risk=overall,
            details={
                "randomization": "Automated assessment based on methodology description",
                "blinding": "Automated assessment based on study design",
                "outcome_data": "Automated assessment based on results reporting",
                "measurement": "Automated assessment based on outcome measures",
                "reporting": "Automated assessment based on protocol adherence",
                "overall_justification": f"Overall risk: {overall.value} based on automated assessment",
            },
        )

    # --- AMSTAR-2 checklist ---

    def assess_systematic_review(self, study: UnifiedStudy, methods: str = "", results: str = "",
                                 full_text: str = "") -> AMSTAR2Assessment:
        base = f"{study.title} {study.abstract}"
        texts = {
            "methods": f"{base} {methods}".lower(),
            "results": f"{base} {results}".lower(),
            "full": f"{base} {full_text}".lower(),
        }
        items = {}
        for name, source, cues in AMSTAR_ITEMS:
            if cues is not None:
                items[name] = has_any(texts[source], cues)
        results_text = texts["results"]
        items["risk_of_bias_reporting"] = "risk of bias" in results_text and (
            "results" in results_text or "figure" in results_text)
        items["risk_of_bias_results"] = "bias" in results_text and "meta-analysis" in results_text

        assessment = AMSTAR2Assessment(**items)
        assessment.score = sum(1 for v in items.values() if v)
        assessment.overall_confidence = amstar_confidence(assessment.critical_met, assessment.score)
        assessment.details = {
            "protocol": "Automated assessment of protocol registration",
            "search_strategy": "Automated assessment of search comprehensiveness",
            "selection_process": "Automated assessment of selection process",
            "data_extraction": "Automated assessment of data extraction",
            "bias_assessment": "Automated assessment of bias evaluation",
            "overall_justification": (f"Confidence: {assessment.overall_confidence} "
                                      f"({assessment.score}/12 criteria met)"),
        }
        return assessment

    # --- Report ---

    def assess(self, study: UnifiedStudy, methods: str = "", results: str = "",
               full_text: str = "") -> StudyQualityReport:
        assessed_type = self.detect_type(study)
        rob2 = amstar2 = None
        recommendations: List[str] = []

        if assessed_type is AssessedType.RCT:
            rob2 = self.assess_rct(study, methods, results)
            overall = {BiasLevel.LOW: "High", BiasLevel.SOME_CONCERNS: "Moderate",
                       BiasLevel.HIGH: "Low"}[rob2.overall_risk]
            score = float(sum(_BIAS_POINTS[d] for d in rob2.domains))
            if rob2.randomization_process is BiasLevel.HIGH:
                recommendations.append("Caution: Inadequate randomization process may affect validity")
            if rob2.deviations_from_intervention is BiasLevel.HIGH:
                recommendations.append("Caution: Significant protocol deviations may bias results")
            if rob2.missing_outcome_data is BiasLevel.HIGH:
                recommendations.append("Caution: High missing data rate may affect conclusions")
        elif assessed_type is AssessedType.SYSTEMATIC_REVIEW:
            amstar2 = self.assess_systematic_review(study, methods, results, full_text)
            overall = {"High": "High", "Moderate": "Moderate", "Low": "Low",
                       "Critically Low": "Very Low"}[amstar2.overall_confidence]
            score = amstar2.score / 12 * 100
            if amstar2.score < 6:
                recommendations.append("Caution: Low methodological quality systematic review")
            if not amstar2.comprehensive_search:
                recommendations.append("Limited search strategy may have missed relevant studies")
            if not amstar2.risk_of_bias_assessed:
                recommendations.append("No risk of bias assessment limits interpretation")
        else:
            overall = "Low"
            score = DEFAULT_QUALITY_SCORE

        logger.debug(f"Bias assessment for {study.id}: {assessed_type.value} -> {overall} ({score:.0f})")
        return StudyQualityReport(
            study_id=study.id,
            study_type=assessed_type,
            overall_quality=overall,
            quality_score=score,
            recommendations=recommendations,
            rob2_assessment=rob2,
            amstar2_assessment=amstar2,
        )


_default_assessor = BiasAssessor()


def assess_bias(study: UnifiedStudy) -> StudyQualityReport:
    """Assess one study with the default keyword assessor."""
    return _default_assessor.assess(study)
