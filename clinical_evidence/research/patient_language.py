"""
Plain-language rewriting of evidence summaries for patients.

Replaces jargon using the tables in data/patient_vocabulary.json, simplifies
connectives, splits long sentences, rewrites common passive forms and spells
out percentages and dosing abbreviations. Readability is scored with the
Flesch-Kincaid grade level:

    0.39 * (words / sentences) + 11.8 * (syllables / words) - 15.59
"""

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from clinical_evidence import config
from clinical_evidence.models import StudyType, UnifiedStudy

logger = logging.getLogger(__name__)

LONG_SENTENCE_WORDS = 20
PREFERRED_BREAK_AFTER = 15
BREAK_WORDS = ("and", "but", "or", "because", "since", "while", "although", "if")

_PASSIVE_BY_RE = re.compile(
    r"\b(?P<subject>(?:the |a |an )?\w+) (?:was|were) (?P<verb>\w+ed) by (?P<agent>(?:the |a |an )?\w+)",
    re.IGNORECASE,
)


@dataclass
class SimplificationResult:
    simplified_text: str
    reading_level: float
    improvements: List[str] = field(default_factory=list)
    original_complexity: float = 0.0
    complex_terms_replaced: Dict[str, str] = field(default_factory=dict)


@lru_cache(maxsize=4)
def load_patient_vocabulary(data_dir: Optional[str] = None) -> dict:
    base = Path(data_dir) if data_dir else Path(config.DATA_DIR)
    with open(base / "patient_vocabulary.json", encoding="utf-8") as f:
        return json.load(f)


def _match_case(replacement: str, original: str) -> str:
    if original[:1].isupper() and not original.isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


# ──────────────────────────────────────────────────────────────
# Readability
# ──────────────────────────────────────────────────────────────

def count_sentences(text: str) -> int:
    return len([s for s in re.split(r"[.!?]+", text) if s.strip()])


def count_words(text: str) -> int:
    return len(text.split())


def count_syllables(text: str) -> int:
    """Vowel-group syllable estimate with a silent-e adjustment; at least one per word."""
    total = 0
    for word in text.lower().split():
        word = re.sub(r"[^a-z]", "", word)
        if not word:
            continue
        syllables = 0
        previous_vowel = False
        for ch in word:
            is_vowel = ch in "aeiouy"
            if is_vowel and not previous_vowel:
                syllables += 1
            previous_vowel = is_vowel
        if word.endswith("e") and syllables > 1:
            syllables -= 1
        total += max(syllables, 1)
    return total


def flesch_kincaid_grade(text: str) -> float:
    sentences = count_sentences(text)
    words = count_words(text)
    if sentences == 0 or words == 0:
        return 0.0
    syllables = count_syllables(text)
    return 0.39 * (words / sentences) + 11.8 * (syllables / words) - 15.59


def get_reading_level_description(level: float) -> str:
    if level <= 6:
        return "Elementary school level (6th grade or below)"
    if level <= 8:
        return "Middle school level (7th-8th grade)"
    if level <= 10:
        return "High school level (9th-10th grade)"
    if level <= 12:
        return "High school graduate level (11th-12th grade)"
    if level <= 16:
        return "College level (13th-16th grade)"
    return "Graduate level (17th grade and above)"


# ──────────────────────────────────────────────────────────────
# Optimizer
# ──────────────────────────────────────────────────────────────

class PatientLanguageOptimizer:
    def __init__(self, vocabulary: Optional[dict] = None):
        vocab = vocabulary if vocabulary is not None else load_patient_vocabulary()
        # Longest first so "therapeutic range" wins over "therapeutic"
        self.medical_terms = dict(sorted(vocab["medical_terms"].items(), key=lambda kv: -len(kv[0])))
        self.complex_phrases = dict(sorted(vocab["complex_phrases"].items(), key=lambda kv: -len(kv[0])))
        self.connectives = vocab.get("connectives", {})
        self.passive_phrases = vocab.get("passive_phrases", {})
        self.dosing_abbreviations = vocab.get("dosing_abbreviations", {})

    def _replace_all(self, text: str, mapping: Dict[str, str], label: str,
                     replaced: Dict[str, str], improvements: List[str]) -> str:
        for complex_term, simple in mapping.items():
            pattern = re.compile(rf"\b{re.escape(complex_term)}\b", re.IGNORECASE)
            if pattern.search(text):
                text = pattern.sub(lambda m: _match_case(simple, m.group(0)), text)
                replaced[complex_term] = simple
                improvements.append(f'{label}: "{complex_term}" → "{simple}"')
        return text

    def simplify_connectives(self, text: str) -> str:
        for complex_word, simple in self.connectives.items():
            text = re.sub(rf"\b{re.escape(complex_word)}\b",
                          lambda m: _match_case(simple, m.group(0)), text, flags=re.IGNORECASE)
        return text

    @staticmethod
    def _split_words(sentence: str) -> str:
        words = sentence.split()
        if len(words) <= LONG_SENTENCE_WORDS:
            return sentence
        breaks = [i for i in range(1, len(words) - 1)
                  if re.sub(r"[^\w]", "", words[i]).lower() in BREAK_WORDS]
        cut = next((i for i in breaks if i > PREFERRED_BREAK_AFTER), len(words) // 2)
        leading = " " if sentence[:1].isspace() else ""
        return leading + " ".join(words[:cut]) + ". " + " ".join(words[cut:])

    def break_long_sentences(self, text: str) -> str:
        parts = re.split(r"([.!?]+)", text)
        out = []
        for i in range(0, len(parts), 2):
            sentence = parts[i]
            punctuation = parts[i + 1] if i + 1 < len(parts) else ""
            if sentence.strip():
                sentence = self._split_words(sentence)
            out.append(sentence + punctuation)
        return "".join(out)

    def convert_to_active_voice(self, text: str) -> str:
        def _swap(m: re.Match) -> str:
            subject, verb, agent = m.group("subject"), m.group("verb"), m.group("agent")
            sentence = f"{agent} {verb} {subject[:1].lower() + subject[1:]}"
            return _match_case(sentence, subject)

        text = _PASSIVE_BY_RE.sub(_swap, text)
        for passive, active in self.passive_phrases.items():
            text = re.sub(rf"\b{re.escape(passive)}\b",
                          lambda m: _match_case(active, m.group(0)), text, flags=re.IGNORECASE)
        return text

    def add_explanatory_context(self, text: str) -> str:
        text = re.sub(r"(\d+(?:\.\d+)?)%", r"\1 out of 100 people", text)
        text = re.sub(r"\b1 in (\d+)\b", r"1 out of every \1 people", text)
        for pattern, spelled in self.dosing_abbreviations.items():
            text = re.sub(rf"\b{pattern}(?!\w)", spelled, text, flags=re.IGNORECASE)
        return text

    def simplify_for_patients(self, text: str) -> SimplificationResult:
        original = flesch_kincaid_grade(text)
        improvements: List[str] = []
        replaced: Dict[str, str] = {}

        simplified = self._replace_all(text, self.complex_phrases, "Simplified phrase", replaced, improvements)
        simplified = self._replace_all(simplified, self.medical_terms, "Medical term", replaced, improvements)
        simplified = self.simplify_connectives(simplified)
        simplified = self.break_long_sentences(simplified)
        simplified = self.convert_to_active_voice(simplified)
        simplified = self.add_explanatory_context(simplified)

        level = flesch_kincaid_grade(simplified)
        logger.debug(f"Patient language: grade {original:.1f} -> {level:.1f}, {len(replaced)} terms replaced")
        return SimplificationResult(
            simplified_text=simplified,
            reading_level=level,
            improvements=improvements,
            original_complexity=original,
            complex_terms_replaced=replaced,
        )

    def validate_reading_level(self, text: str, target_level: float = 6) -> dict:
        current = flesch_kincaid_grade(text)
        suggestions = []
        if current > target_level + 2:
            suggestions = [
                "Text is significantly above target reading level",
                "Consider breaking long sentences into shorter ones",
                "Replace more complex medical terms with simpler alternatives",
            ]
        elif current > target_level:
            suggestions = [
                "Text is slightly above target reading level",
                "Consider simplifying a few more complex terms",
            ]
        return {"meets_target": current <= target_level, "current_level": current, "suggestions": suggestions}

    def get_complexity_statistics(self, text: str) -> dict:
        sentences = count_sentences(text)
        words = count_words(text)
        syllables = count_syllables(text)
        terms = [t.lower() for t in self.medical_terms]
        complex_words = [w for w in text.split()
                         if count_syllables(w) >= 3 or any(t in w.lower() for t in terms)]
        long_sentences = [s for s in re.split(r"[.!?]+", text)
                          if s.strip() and len(s.split()) > LONG_SENTENCE_WORDS]
        return {
            "average_words_per_sentence": words / sentences if sentences else 0.0,
            "average_syllables_per_word": syllables / words if words else 0.0,
            "complex_word_count": len(complex_words),
            "long_sentence_count": len(long_sentences),
        }


def build_patient_summary(studies: List[UnifiedStudy], query: str) -> str:
    """Unsimplified lay summary of what the included evidence consists of."""
    trials = sum(1 for s in studies if s.study_type is StudyType.RCT)
    reviews = sum(1 for s in studies if s.study_type is StudyType.SYSTEMATIC_REVIEW)
    if not studies:
        return (f"We did not find studies that clearly answer your question about {query}. "
                "You should talk to your doctor about what is known and what other options exist.")
    return (
        f"Based on {len(studies)} medical studies, here is what we found about {query}. "
        f"The studies included {trials} careful clinical trial{'s' if trials != 1 else ''} "
        f"and {reviews} review{'s' if reviews != 1 else ''} of multiple studies. "
        "You should talk to your doctor about whether this treatment is right for you."
    )


def simplify_for_patients(text: str) -> SimplificationResult:
    return PatientLanguageOptimizer().simplify_for_patients(text)
