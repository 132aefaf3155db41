"""
Evidence gap analysis and recommendation generation.

Gaps are emitted in a fixed order: missing RCTs, missing systematic reviews,
the specialty resource gap, missing recent studies, then the zero-result
search-strategy gaps. Specialty guidance text comes from the vocabulary
tables in clinical_evidence/data/specialties.json.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from clinical_evidence import config
from clinical_evidence.models import StudyType, UnifiedStudy
from clinical_evidence.research.query_expansion import (
    MedicalVocabulary,
    detect_medical_specialty,
    load_vocabulary,
)

logger = logging.getLogger(__name__)

GAP_TYPES = ("population", "intervention", "comparison", "outcome", "study_design")

NO_STUDIES_FOUND = "No relevant studies found with current search strategy"
ALTERNATIVE_SOURCES = [
    "Alternative evidence sources:",
    "• Clinical practice guidelines from relevant medical societies",
    "• ClinicalTrials.gov for ongoing studies",
    "• Cochrane Library for systematic reviews",
    "• Specialty-specific medical journals and conference abstracts",
]
NSCLC_LANDMARK_HINT = ("Consider recent landmark trials for NSCLC and immunotherapy: "
                       "KEYNOTE-189, KEYNOTE-407, CheckMate-227, IMpower150, PACIFIC")


@dataclass(frozen=True)
class EvidenceGap:
    gap_type: str            # one of GAP_TYPES
    description: str
    severity: str            # "High" | "Medium" | "Low"
    suggested_research: str


def recency_cutoff(today: Optional[date] = None) -> int:
    return (today or date.today()).year - config.RECENT_YEARS_WINDOW


def recent_studies(studies: List[UnifiedStudy], cutoff_year: int) -> List[UnifiedStudy]:
    return [s for s in studies if s.published is not None and s.published.year >= cutoff_year]


def identify_evidence_gaps(studies: List[UnifiedStudy], query: str,
                           vocabulary: Optional[MedicalVocabulary] = None,
                           today: Optional[date] = None) -> List[EvidenceGap]:
    vocab = vocabulary if vocabulary is not None else load_vocabulary()
    specialty = detect_medical_specialty(query, vocab)
    types = {s.study_type for s in studies}
    gaps = []

    if StudyType.RCT not in types:
        gaps.append(EvidenceGap("study_design", "No randomized controlled trials found", "High",
                                vocab.guidance(specialty, "rct_guidance")))
    if StudyType.SYSTEMATIC_REVIEW not in types:
        gaps.append(EvidenceGap("study_design", "No systematic reviews or meta-analyses found", "High",
                                vocab.guidance(specialty, "review_guidance")))

    resource_gap = vocab.resource_gap(specialty)
    if resource_gap:
        gaps.append(EvidenceGap("intervention", resource_gap["description"], "High",
                                resource_gap["suggested_research"]))

    cutoff = recency_cutoff(today)
    if not recent_studies(studies, cutoff):
        gaps.append(EvidenceGap(
            "study_design",
            f"No recent studies ({cutoff} or later) found - important for rapidly evolving medical fields",
            "High",
            vocab.guidance(specialty, "recency_guidance"),
        ))

    if not studies:
        gaps.append(EvidenceGap("study_design", NO_STUDIES_FOUND, "High",
                                vocab.guidance(specialty, "search_strategy")))
        gaps.append(EvidenceGap("outcome", "Consider searching for specific clinical outcomes", "Medium",
                                vocab.guidance(specialty, "outcomes")))

    logger.info(f"Identified {len(gaps)} evidence gaps (specialty: {specialty or 'none'})")
    return gaps


def generate_recommendations(studies: List[UnifiedStudy], gaps: List[EvidenceGap], query: str,
                             vocabulary: Optional[MedicalVocabulary] = None,
                             today: Optional[date] = None) -> List[str]:
    """Turn gaps and evidence statistics into an ordered recommendation list."""
    vocab = vocabulary if vocabulary is not None else load_vocabulary()
    recommendations: List[str] = []

    if not studies:
        recommendations.append(NO_STUDIES_FOUND)
        specialty = detect_medical_specialty(query, vocab)
        if specialty:
            recommendations.append(f"Recommended search strategy for {specialty.replace('_', ' ')}:")
            recommendations.append(f"• {vocab.guidance(specialty, 'search_strategy')}")
            recommendations.append(f"• {vocab.guidance(specialty, 'recency_guidance')}")
            trials = vocab.landmark_trials(specialty)
            if trials:
                recommendations.append(f"• Consider landmark trials: {', '.join(t.identifier for t in trials)}")
            bodies = vocab.guideline_bodies(specialty)
            if bodies:
                recommendations.append(f"• Check practice guidelines from: {', '.join(bodies)}")
        recommendations.extend(ALTERNATIVE_SOURCES)
        return recommendations

    high_quality = [s for s in studies if s.quality_score >= config.HIGH_QUALITY_SCORE]
    if high_quality:
        recommendations.append(f"{len(high_quality)} high-quality studies provide strong evidence")

    level1 = [s for s in studies if s.evidence_level == 1]
    if level1:
        recommendations.append(f"{len(level1)} systematic reviews provide Level 1 evidence")

    critical = [g for g in gaps if g.severity == "High"]
    if critical:
        recommendations.append(f"Critical evidence gaps: {'; '.join(g.description for g in critical)}")
        recommendations.append("Suggested next steps:")
        recommendations.extend(f"• {g.suggested_research}" for g in critical)

    open_access = sum(1 for s in studies if s.is_open_access) / len(studies) * 100
    recommendations.append(f"{open_access:.1f}% of evidence is freely accessible")

    cutoff = recency_cutoff(today)
    recent = recent_studies(studies, cutoff)
    if recent:
        recommendations.append(f"{len(recent)} recent studies ({cutoff}+) provide current evidence")
    else:
        recommendations.append(f"No recent studies ({cutoff}+) found - evidence may be outdated in rapidly evolving field")

    if "NSCLC" in query or "immunotherapy" in query:
        recommendations.append(NSCLC_LANDMARK_HINT)
    return recommendations
