"""
Deterministic medical query expansion.

Rewrites recognized condition / drug / study-design synonyms into OR-groups,
adds a recency boost for review-type questions, and appends landmark-trial
terms when the query maps onto a known specialty. No I/O beyond loading the
vocabulary tables from clinical_evidence/data/ once.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Pattern

from clinical_evidence import config

logger = logging.getLogger(__name__)


@dataclass
class LandmarkTrial:
    identifier: str
    terms: List[str]


@dataclass
class MedicalVocabulary:
    """Synonym, specialty and guidance tables loaded from JSON."""
    synonyms: Dict[str, List[str]]
    detection_order: List[str]
    specialties: Dict[str, dict]
    default_guidance: Dict[str, str]
    clinical_guidelines: Dict[str, List[str]] = field(default_factory=dict)
    evidence_boost_terms: List[str] = field(default_factory=lambda: ["systematic review", "meta-analysis"])
    _pattern: Optional[Pattern] = field(default=None, repr=False)
    _groups: Dict[str, List[str]] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        # A synonym listed under several concepts expands to the union of them.
        groups: Dict[str, List[str]] = {}
        for terms in self.synonyms.values():
            for term in terms:
                merged = groups.setdefault(term.lower(), [])
                for t in terms:
                    if t not in merged:
                        merged.append(t)
        self._groups = groups

        alternatives = []
        for term in sorted({t for terms in self.synonyms.values() for t in terms}, key=len, reverse=True):
            escaped = re.escape(term)
            if _is_acronym(term):
                alternatives.append(rf"(?-i:\b{escaped}\b)")
            else:
                alternatives.append(rf"\b{escaped}\b")
        self._pattern = re.compile("|".join(alternatives), re.IGNORECASE) if alternatives else None

    def synonym_group(self, term: str) -> List[str]:
        return self._groups.get(term.lower(), [])

    def landmark_trials(self, specialty: Optional[str]) -> List[LandmarkTrial]:
        spec = self.specialties.get(specialty or "", {})
        return [LandmarkTrial(t["identifier"], list(t["terms"])) for t in spec.get("landmark_trials", [])]

    def guidance(self, specialty: Optional[str], key: str) -> str:
        spec = self.specialties.get(specialty or "", {})
        return spec.get(key) or self.default_guidance.get(key, "")

    def resource_gap(self, specialty: Optional[str]) -> Optional[dict]:
        return self.specialties.get(specialty or "", {}).get("resource_gap")

    def guideline_bodies(self, specialty: Optional[str]) -> List[str]:
        return list(self.clinical_guidelines.get(specialty or "", []))


def _is_acronym(term: str) -> bool:
    letters = [c for c in term if c.isalpha()]
    return bool(letters) and len(term) <= 5 and all(c.isupper() for c in letters)


@lru_cache(maxsize=4)
def load_vocabulary(data_dir: Optional[str] = None) -> MedicalVocabulary:
    """Load synonym and specialty tables. Raises if a table is missing or malformed."""
    base = Path(data_dir) if data_dir else Path(config.DATA_DIR)
    with open(base / "medical_terms.json", encoding="utf-8") as f:
        terms = json.load(f)
    with open(base / "specialties.json", encoding="utf-8") as f:
        specialties = json.load(f)
    vocab = MedicalVocabulary(
        synonyms=terms["synonyms"],
        detection_order=specialties["detection_order"],
        specialties=specialties["specialties"],
        default_guidance=specialties["default_guidance"],
        clinical_guidelines=specialties.get("clinical_guidelines", {}),
        evidence_boost_terms=terms.get("evidence_boost_terms", ["systematic review", "meta-analysis"]),
    )
    logger.debug(f"Loaded {len(vocab.synonyms)} synonym groups and {len(vocab.specialties)} specialties from {base}")
    return vocab


def detect_medical_specialty(query: str, vocabulary: Optional[MedicalVocabulary] = None) -> Optional[str]:
    """Return the first specialty whose keywords appear in the query, else None."""
    vocab = vocabulary if vocabulary is not None else load_vocabulary()
    q = (query or "").lower()
    for specialty in vocab.detection_order:
        keywords = vocab.specialties.get(specialty, {}).get("keywords", [])
        if any(k in q for k in keywords):
            return specialty
    return None


def _recency_clause(reference_year: int, span: int) -> str:
    years = " OR ".join(f'"{y}"[Date - Publication]' for y in range(reference_year - span, reference_year + 1))
    return f" AND ({years})"


def expand_medical_query(
    query: str,
    vocabulary: Optional[MedicalVocabulary] = None,
    reference_year: Optional[int] = None,
) -> str:
    """Expand a free-text clinical question into a boolean search string.

    Each recognized synonym becomes ("<as typed>" OR "<synonym>" ...), so the
    expanded string always contains the original wording. Review-type queries
    get a publication-year boost anchored on reference_year, so the output is a
    function of (query, vocabulary, reference_year). Callers that need
    reproducible output pass the year; omitted, it is read from the clock.
    A detected specialty appends OR (<landmark trial terms>).
    """
    if not query or not query.strip():
        return query or ""
    vocab = vocabulary if vocabulary is not None else load_vocabulary()

    def _replace(m: re.Match) -> str:
        matched = m.group(0)
        group = vocab.synonym_group(matched)
        others = [t for t in group if t.lower() != matched.lower()]
        return "(" + " OR ".join(f'"{t}"' for t in [matched] + others) + ")"

    expanded = vocab._pattern.sub(_replace, query) if vocab._pattern else query

    lowered = expanded.lower()
    if any(t in lowered for t in vocab.evidence_boost_terms):
        year = reference_year or date.today().year
        expanded += _recency_clause(year, config.RECENT_YEARS_WINDOW)

    specialty = detect_medical_specialty(query, vocab)
    trials = vocab.landmark_trials(specialty)
    if trials:
        landmark_terms = " OR ".join(" OR ".join(t.terms) for t in trials)
        expanded += f" OR ({landmark_terms})"

    return expanded
