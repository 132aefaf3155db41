"""
GRADE confidence rating for a body of evidence.

Five domains (risk of bias, inconsistency, indirectness, imprecision,
publication bias) each carry a rating and a reason. Overall confidence:

    every domain no-concern          -> high
    any domain very-serious-concern  -> very-low
    otherwise by serious-concern count: 0 high, 1 moderate, 2+ low

A single very-serious domain does not step down two levels as in textbook
GRADE; it sets very-low outright.
"""

import logging
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


class Rating(Enum):
    NO_CONCERN = "no-concern"
    SERIOUS = "serious-concern"
    VERY_SERIOUS = "very-serious-concern"


class Confidence(Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"
    VERY_LOW = "very-low"

    @property
    def label(self) -> str:
        return {"high": "High", "moderate": "Moderate", "low": "Low", "very-low": "Very Low"}[self.value]

    @property
    def downgrade_steps(self) -> int:
        return ["high", "moderate", "low", "very-low"].index(self.value)


FILLED_GLYPH = "⊕"
EMPTY_GLYPH = "⊝"


@dataclass(frozen=True)
class GradeDomain:
    rating: Rating = Rating.NO_CONCERN
    reason: str = ""


@dataclass(frozen=True)
class GradeDomains:
    """The five rated domains, in reporting order."""
    risk_of_bias: GradeDomain = GradeDomain(Rating.NO_CONCERN, "No serious risk of bias detected")
    inconsistency: GradeDomain = GradeDomain(Rating.NO_CONCERN, "No important inconsistency")
    indirectness: GradeDomain = GradeDomain(Rating.NO_CONCERN, "No important indirectness")
    imprecision: GradeDomain = GradeDomain(Rating.NO_CONCERN, "Precise estimate")
    publication_bias: GradeDomain = GradeDomain(Rating.NO_CONCERN, "No evidence of publication bias")

    def items(self):
        return [(f.name, getattr(self, f.name)) for f in fields(self)]


DOMAIN_LABELS = {
    "risk_of_bias": "Risk of bias",
    "inconsistency": "Inconsistency",
    "indirectness": "Indirectness",
    "imprecision": "Imprecision",
    "publication_bias": "Publication bias",
}


@dataclass(frozen=True)
class GRADEAssessment:
    domains: GradeDomains
    confidence: Confidence
    reasons: tuple = ()


def calculate_grade_confidence(domains: GradeDomains) -> Confidence:
    ratings = [d.rating for _, d in domains.items()]
    if all(r is Rating.NO_CONCERN for r in ratings):
        return Confidence.HIGH
    if any(r is Rating.VERY_SERIOUS for r in ratings):
        return Confidence.VERY_LOW
    serious = sum(1 for r in ratings if r is Rating.SERIOUS)
    if serious == 0:
        return Confidence.HIGH
    if serious == 1:
        return Confidence.MODERATE
    return Confidence.LOW


def grade_reasons(domains: GradeDomains) -> List[str]:
    """Reasons of every domain not rated no-concern, in domain order."""
    return [d.reason for _, d in domains.items() if d.rating is not Rating.NO_CONCERN]


def assess_grade(domains: GradeDomains) -> GRADEAssessment:
    return GRADEAssessment(
        domains=domains,
        confidence=calculate_grade_confidence(domains),
        reasons=tuple(grade_reasons(domains)),
    )


def get_default_grade_assessment(study_design: str) -> GRADEAssessment:
    """Seed domain ratings from the study design ('rct' or 'observational')."""
    design = (study_design or "").strip().lower()
    if design == "rct":
        return assess_grade(GradeDomains())
    if design == "observational":
        return assess_grade(GradeDomains(
            risk_of_bias=GradeDomain(Rating.SERIOUS, "Observational study design"),
        ))
    raise ValueError(f"Unknown study design: {study_design!r} (expected 'rct' or 'observational')")


def glyph_bar(confidence: Confidence) -> str:
    filled = 4 - confidence.downgrade_steps
    return FILLED_GLYPH * filled + EMPTY_GLYPH * (4 - filled)


def generate_grade_summary(assessment: GRADEAssessment) -> str:
    lines = [
        f"Overall confidence in the evidence: {assessment.confidence.label}",
        glyph_bar(assessment.confidence),
    ]
    for name, domain in assessment.domains.items():
        if domain.rating is not Rating.NO_CONCERN:
            lines.append(f"- {DOMAIN_LABELS[name]}: {domain.reason}")
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────
# Rating an evidence set
# ──────────────────────────────────────────────────────────────

def grade_evidence(study_types: Sequence[str], overall_qualities: Sequence[str],
                   i_squared: Optional[float] = None, ci_crosses_null: Optional[bool] = None) -> GRADEAssessment:
    """Derive domain ratings from the included evidence.

    study_types are canonical StudyType values of the included studies and
    overall_qualities the per-study bias-assessment verdicts (High / Moderate /
    Low / Very Low). Pooled heterogeneity and CI drive inconsistency and
    imprecision when a meta-analysis was possible.
    """
    domains = GradeDomains()
    n = len(study_types)
    if n == 0:
        return assess_grade(replace(
            domains,
            imprecision=GradeDomain(Rating.VERY_SERIOUS, "No studies available to estimate an effect"),
        ))

    randomized = sum(1 for t in study_types if t in ("RCT", "Systematic Review"))
    poor = sum(1 for q in overall_qualities if q in ("Low", "Very Low"))
    if randomized == 0:
        domains = replace(domains, risk_of_bias=GradeDomain(Rating.SERIOUS, "Observational study design"))
    elif overall_qualities and poor / len(overall_qualities) > 0.5:
        domains = replace(domains, risk_of_bias=GradeDomain(
            Rating.SERIOUS, f"{poor} of {len(overall_qualities)} studies at high risk of bias"))

    if i_squared is not None:
        if i_squared > 75:
            domains = replace(domains, inconsistency=GradeDomain(
                Rating.VERY_SERIOUS, f"Considerable heterogeneity (I² = {i_squared:.0f}%)"))
        elif i_squared > 50:
            domains = replace(domains, inconsistency=GradeDomain(
                Rating.SERIOUS, f"Substantial heterogeneity (I² = {i_squared:.0f}%)"))

    if ci_crosses_null:
        domains = replace(domains, imprecision=GradeDomain(
            Rating.SERIOUS, "Confidence interval includes no effect"))
    elif n < 2:
        domains = replace(domains, imprecision=GradeDomain(Rating.SERIOUS, "Single study"))

    assessment = assess_grade(domains)
    logger.info(f"GRADE confidence: {assessment.confidence.label} over {n} studies")
    return assessment
