"""
Tests for the patient-language optimizer and readability scoring.
"""

import pytest

from clinical_evidence.models import StudyType
from clinical_evidence.research.patient_language import (
    PatientLanguageOptimizer,
    build_patient_summary,
    count_syllables,
    flesch_kincaid_grade,
    get_reading_level_description,
    simplify_for_patients,
)


@pytest.fixture(scope="module")
def optimizer():
    return PatientLanguageOptimizer()


class TestReadability:

    def test_syllables(self):
        assert count_syllables("cat") == 1
        assert count_syllables("make") == 1
        assert count_syllables("beautiful") == 3
        assert count_syllables("rhythm") == 1
        assert count_syllables("") == 0
        assert count_syllables("123") == 0

    def test_empty_text_scores_zero(self):
        assert flesch_kincaid_grade("") == 0.0
        assert flesch_kincaid_grade("...") == 0.0

    def test_grade_formula(self):
        # 1 sentence, 3 words, 3 syllables
        assert flesch_kincaid_grade("The cat sat.") == pytest.approx(0.39 * 3 + 11.8 * 1 - 15.59)

    def test_level_descriptions(self):
        assert get_reading_level_description(5) == "Elementary school level (6th grade or below)"
        assert get_reading_level_description(8) == "Middle school level (7th-8th grade)"
        assert get_reading_level_description(9.5) == "High school level (9th-10th grade)"
        assert get_reading_level_description(12) == "High school graduate level (11th-12th grade)"
        assert get_reading_level_description(14) == "College level (13th-16th grade)"
        assert get_reading_level_description(18) == "Graduate level (17th grade and above)"


class TestSimplify:

    def test_phrases_then_terms(self, optimizer):
        result = optimizer.simplify_for_patients("Aspirin may reduce the risk of myocardial infarction.")
        assert result.simplified_text == "Aspirin may lower the chance of heart attack."
        assert 'Simplified phrase: "reduce the risk of" → "lower the chance of"' in result.improvements
        assert 'Medical term: "myocardial infarction" → "heart attack"' in result.improvements
        assert result.complex_terms_replaced["myocardial infarction"] == "heart attack"
        assert result.reading_level < result.original_complexity

    def test_sentence_start_keeps_capital(self, optimizer):
        assert optimizer.simplify_for_patients("Hypertension is common.").simplified_text == \
            "High blood pressure is common."

    def test_longest_term_wins(self, optimizer):
        text = optimizer.simplify_for_patients("Stay within the therapeutic range.").simplified_text
        assert text == "Stay within the safe and effective amount."

    def test_word_boundaries(self, optimizer):
        # "renal" must not fire inside "adrenal"
        text = optimizer.simplify_for_patients("The adrenal gland.").simplified_text
        assert text == "The adrenal gland."

    def test_connectives(self, optimizer):
        assert optimizer.simplify_for_patients("However, it works.").simplified_text == "But, it works."

    def test_percentages_and_ratios(self, optimizer):
        text = optimizer.simplify_for_patients("About 40% improved. Side effects hit 1 in 20.").simplified_text
        assert "40 out of 100 people improved" in text
        assert "1 out of every 20 people" in text

    def test_dosing_abbreviations(self, optimizer):
        text = optimizer.simplify_for_patients("Take 81 mg q.d. with food.").simplified_text
        assert text == "Take 81 mg once a day with food."
        assert "twice a day" in optimizer.simplify_for_patients("Use it BID.").simplified_text

    def test_passive_with_agent(self, optimizer):
        text = optimizer.simplify_for_patients("The trial was funded by the government.").simplified_text
        assert text == "The government funded the trial."

    def test_passive_phrase(self, optimizer):
        text = optimizer.simplify_for_patients("It was found that walking helps.").simplified_text
        assert text == "Researchers found that walking helps."

    def test_long_sentence_breaks_at_conjunction(self, optimizer):
        first = " ".join(f"word{i}" for i in range(17))
        second = " ".join(f"more{i}" for i in range(7))
        text = optimizer.simplify_for_patients(f"{first} and {second}.").simplified_text
        assert text == f"{first}. and {second}."

    def test_long_sentence_without_conjunction_breaks_at_midpoint(self, optimizer):
        words = [f"word{i}" for i in range(22)]
        text = optimizer.simplify_for_patients(" ".join(words) + ".").simplified_text
        assert text == " ".join(words[:11]) + ". " + " ".join(words[11:]) + "."

    def test_short_sentences_untouched(self, optimizer):
        assert optimizer.simplify_for_patients("Walk daily. Eat well!").simplified_text == "Walk daily. Eat well!"

    def test_module_level_helper(self):
        assert simplify_for_patients("Renal function").simplified_text == "Kidney function"


class TestValidation:

    def test_simple_text_meets_target(self, optimizer):
        check = optimizer.validate_reading_level("The cat sat.")
        assert check["meets_target"]
        assert check["suggestions"] == []

    def test_complex_text_gets_suggestions(self, optimizer):
        text = ("Pharmacological administration of anticoagulation necessitates individualized "
                "consideration of contraindications, bioavailability and hepatic metabolism.")
        check = optimizer.validate_reading_level(text)
        assert not check["meets_target"]
        assert check["suggestions"][0] == "Text is significantly above target reading level"
        assert len(check["suggestions"]) == 3

    def test_complexity_statistics(self, optimizer):
        stats = optimizer.get_complexity_statistics("The cat sat. Cardiovascular mortality is high.")
        assert stats["average_words_per_sentence"] == pytest.approx(3.5)
        assert stats["complex_word_count"] == 2
        assert stats["long_sentence_count"] == 0

    def test_complexity_statistics_empty(self, optimizer):
        stats = optimizer.get_complexity_statistics("")
        assert stats["average_words_per_sentence"] == 0.0
        assert stats["average_syllables_per_word"] == 0.0


class TestPatientSummary:

    def test_counts_trials_and_reviews(self, make_study):
        studies = [make_study(), make_study(id="2", study_type=StudyType.RCT),
                   make_study(id="3", study_type=StudyType.RCT)]
        summary = build_patient_summary(studies, "aspirin")
        assert summary.startswith("Based on 3 medical studies, here is what we found about aspirin.")
        assert "2 careful clinical trials and 1 review of multiple studies" in summary

    def test_no_studies(self):
        assert build_patient_summary([], "aspirin").startswith("We did not find studies")
