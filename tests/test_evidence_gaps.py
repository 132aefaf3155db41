"""
Tests for evidence gap identification and recommendation generation.
"""

from datetime import date

from clinical_evidence.models import StudyType
from clinical_evidence.research.evidence_gaps import (
    ALTERNATIVE_SOURCES,
    NO_STUDIES_FOUND,
    generate_recommendations,
    identify_evidence_gaps,
    recency_cutoff,
)

TODAY = date(2026, 6, 1)
CARDIO_QUERY = "aspirin cardiovascular prevention"
PLAIN_QUERY = "knee pain walking programme"


class TestIdentifyGaps:

    def test_recency_cutoff(self):
        assert recency_cutoff(TODAY) == 2024

    def test_review_only_cardiology(self, make_study):
        gaps = identify_evidence_gaps([make_study(publication_date="2023-05-01")], CARDIO_QUERY, today=TODAY)
        descriptions = [g.description for g in gaps]
        assert descriptions == [
            "No randomized controlled trials found",
            "Cardiology-specific databases and guidelines may be needed",
            "No recent studies (2024 or later) found - important for rapidly evolving medical fields",
        ]
        assert gaps[0].suggested_research.startswith("Search for landmark cardiovascular trials")
        assert all(g.severity == "High" for g in gaps)

    def test_complete_recent_evidence_has_no_design_gaps(self, make_study):
        studies = [
            make_study(id="sr", publication_date="2025-02-01"),
            make_study(id="rct", study_type=StudyType.RCT, publication_date="2024-07-01"),
        ]
        assert identify_evidence_gaps(studies, PLAIN_QUERY, today=TODAY) == []

    def test_no_studies(self):
        gaps = identify_evidence_gaps([], PLAIN_QUERY, today=TODAY)
        assert [g.gap_type for g in gaps] == ["study_design", "study_design", "study_design",
                                              "study_design", "outcome"]
        assert gaps[3].description == NO_STUDIES_FOUND
        assert gaps[4].severity == "Medium"
        assert gaps[0].suggested_research == ("Search for high-quality randomized controlled trials "
                                              "in relevant medical databases")

    def test_undated_study_is_not_recent(self, make_study):
        studies = [make_study(publication_date=""), make_study(id="r", study_type=StudyType.RCT,
                                                               publication_date="")]
        gaps = identify_evidence_gaps(studies, PLAIN_QUERY, today=TODAY)
        assert len(gaps) == 1
        assert gaps[0].description.startswith("No recent studies")


class TestRecommendations:

    def test_no_studies_plain_query(self):
        gaps = identify_evidence_gaps([], PLAIN_QUERY, today=TODAY)
        recs = generate_recommendations([], gaps, PLAIN_QUERY, today=TODAY)
        assert recs[0] == NO_STUDIES_FOUND
        assert recs[1:] == ALTERNATIVE_SOURCES

    def test_no_studies_with_specialty(self):
        gaps = identify_evidence_gaps([], CARDIO_QUERY, today=TODAY)
        recs = generate_recommendations([], gaps, CARDIO_QUERY, today=TODAY)
        assert recs[0] == NO_STUDIES_FOUND
        assert recs[1] == "Recommended search strategy for heart failure:"
        assert recs[4] == "• Consider landmark trials: EMPEROR-Reduced, DAPA-HF, PARADIGM-HF"
        assert recs[5] == ("• Check practice guidelines from: AHA, ACC, ESC, "
                           "American Heart Association, European Society of Cardiology")
        assert "Alternative evidence sources:" in recs
        assert "• ClinicalTrials.gov for ongoing studies" in recs

    def test_with_studies(self, make_study):
        studies = [
            make_study(id="sr", publication_date="2025-02-01", quality_score=85),
            make_study(id="rct", study_type=StudyType.RCT, publication_date="2021-01-01",
                       quality_score=60, is_open_access=False),
        ]
        gaps = identify_evidence_gaps(studies, PLAIN_QUERY, today=TODAY)
        recs = generate_recommendations(studies, gaps, PLAIN_QUERY, today=TODAY)
        assert recs == [
            "1 high-quality studies provide strong evidence",
            "1 systematic reviews provide Level 1 evidence",
            "50.0% of evidence is freely accessible",
            "1 recent studies (2024+) provide current evidence",
        ]

    def test_critical_gaps_listed(self, make_study):
        studies = [make_study(publication_date="2020-01-01", quality_score=50)]
        gaps = identify_evidence_gaps(studies, PLAIN_QUERY, today=TODAY)
        recs = generate_recommendations(studies, gaps, PLAIN_QUERY, today=TODAY)
        assert recs[1].startswith("Critical evidence gaps: No randomized controlled trials found; ")
        assert recs[2] == "Suggested next steps:"
        assert recs[-1] == "No recent studies (2024+) found - evidence may be outdated in rapidly evolving field"

    def test_nsclc_hint(self, make_study):
        studies = [make_study(publication_date="2025-01-01")]
        recs = generate_recommendations(studies, [], "pembrolizumab NSCLC", today=TODAY)
        assert recs[-1].startswith("Consider recent landmark trials for NSCLC")
