"""
Tests for effect extraction and random-effects pooling.
"""

import math

import pytest

from clinical_evidence.models import StudyType
from clinical_evidence.research.meta_analysis import (
    StudyEffect,
    extract_effect,
    format_meta_analysis_report,
    heterogeneity_label,
    perform_meta_analysis,
    pool_effects,
)


class TestExtractEffect:

    def test_hazard_ratio(self, make_study):
        effect = extract_effect(make_study(abstract="The hazard ratio was 0.80 (95% CI 0.70-0.91)."))
        assert effect.measure == "HR"
        assert (effect.estimate, effect.ci_lower, effect.ci_upper) == (0.80, 0.70, 0.91)

    def test_acronym_with_to_separator(self, make_study):
        effect = extract_effect(make_study(abstract="Mortality fell (HR 0.75; 95% CI, 0.60 to 0.94)."))
        assert effect.measure == "HR"
        assert effect.ci_upper == 0.94

    def test_odds_ratio_long_form(self, make_study):
        effect = extract_effect(make_study(abstract="Odds ratio 1.42, 95% confidence interval 1.10-1.83"))
        assert effect.measure == "OR"

    def test_lowercase_or_is_not_a_measure(self, make_study):
        assert extract_effect(make_study(abstract="one or 2 doses, 95% CI 1.0-2.0")) is None

    def test_mean_difference_is_not_extracted(self, make_study):
        abstract = "Systolic pressure fell (MD -4.2 mmHg; 95% CI -6.0 to -2.4); mean difference 3.1, 95% CI 1.0-5.2"
        assert extract_effect(make_study(abstract=abstract)) is None

    def test_estimate_outside_ci_is_rejected(self, make_study):
        assert extract_effect(make_study(abstract="RR 2.50 (95% CI 0.70-0.91)")) is None

    def test_no_abstract(self, make_study):
        assert extract_effect(make_study(abstract="")) is None

    def test_standard_error_from_ci(self):
        effect = StudyEffect("s", "HR", 0.8, 0.7, 0.91)
        assert effect.standard_error == pytest.approx((math.log(0.91) - math.log(0.7)) / 3.92)


class TestPooling:

    def test_needs_two_effects(self):
        assert pool_effects([StudyEffect("a", "HR", 0.8, 0.7, 0.91)]) is None

    def test_identical_effects(self):
        effects = [StudyEffect("a", "HR", 0.8, 0.7, 0.91), StudyEffect("b", "HR", 0.8, 0.7, 0.91)]
        result = pool_effects(effects)
        assert result.pooled_effect == pytest.approx(0.8, abs=1e-3)
        assert 0.70 < result.ci_lower < 0.8 < result.ci_upper < 0.91
        assert result.i_squared == 0
        assert result.tau_squared == 0
        assert result.significant
        assert result.quality == "Medium"
        assert "statistically significant" in result.interpretation
        assert "low heterogeneity" in result.interpretation

    def test_heterogeneous_effects(self):
        effects = [StudyEffect("a", "HR", 0.5, 0.4, 0.625), StudyEffect("b", "HR", 1.5, 1.2, 1.875)]
        result = pool_effects(effects)
        assert result.i_squared > 75
        assert result.tau_squared > 0
        assert result.quality == "Low"
        assert result.ci_lower < 1 < result.ci_upper
        assert "no statistically significant" in result.interpretation

    def test_heterogeneity_labels(self):
        assert heterogeneity_label(10) == "low"
        assert heterogeneity_label(40) == "moderate"
        assert heterogeneity_label(60) == "substantial"


class TestPerformMetaAnalysis:

    def test_pools_trials_and_reviews(self, make_study):
        studies = [
            make_study(id="a", study_type=StudyType.RCT, abstract="HR 0.80 (95% CI 0.70-0.91)"),
            make_study(id="b", abstract="hazard ratio 0.85 (95% CI 0.75-0.96)"),
            make_study(id="c", study_type=StudyType.RCT, abstract="HR 0.78 (95% CI 0.66-0.92)"),
        ]
        results = perform_meta_analysis(studies)
        assert len(results) == 1
        assert results[0].outcome == "HR"
        assert results[0].studies_included == 3
        assert [e.study_id for e in results[0].forest_plot_data] == ["a", "b", "c"]

    def test_observational_studies_are_ignored(self, make_study):
        studies = [
            make_study(id="a", study_type=StudyType.RCT, abstract="HR 0.80 (95% CI 0.70-0.91)"),
            make_study(id="b", study_type=StudyType.COHORT_STUDY, abstract="HR 0.85 (95% CI 0.75-0.96)"),
        ]
        assert perform_meta_analysis(studies) == []

    def test_no_extractable_effects(self, make_study):
        studies = [make_study(id="a", abstract="No numbers."), make_study(id="b", abstract="None here.")]
        assert perform_meta_analysis(studies) == []

    def test_most_common_measure_is_pooled(self, make_study):
        studies = [
            make_study(id="a", abstract="RR 0.90 (95% CI 0.80-0.99)"),
            make_study(id="b", abstract="RR 0.85 (95% CI 0.75-0.97)"),
            make_study(id="c", abstract="OR 0.70 (95% CI 0.50-0.98)"),
        ]
        results = perform_meta_analysis(studies)
        assert results[0].outcome == "RR"
        assert results[0].studies_included == 2

    def test_report(self, make_study):
        assert "Meta-analysis not possible" in format_meta_analysis_report([])
        effects = [StudyEffect("a", "HR", 0.8, 0.7, 0.91), StudyEffect("b", "HR", 0.8, 0.7, 0.91)]
        report = format_meta_analysis_report([pool_effects(effects)])
        assert "## Random-Effects Meta-Analysis (HR)" in report
        assert "| **Pooled** |" in report
