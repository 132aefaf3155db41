"""
Async search adapters for the literature databases.

Sources:
- PLOS (https://api.plos.org): open-access journals, Solr search API, no key
- BMC via Springer Nature metadata API: journal-scoped search, SPRINGER_API_KEY
- TRIP (https://www.tripdatabase.com): evidence-hierarchy search, TRIP_API_KEY
- PubMed E-utilities: esearch + efetch XML, optional PUBMED_API_KEY

All clients share:
- WindowRateLimiter: per-adapter request quota over a rolling window
- query_terms / relevance helpers for scoring records against the question

Every adapter returns a SourceResult tagged with its source name. Transport and
parse failures are logged and yield an empty result; an exhausted quota raises
RateLimitExceeded so the orchestrator can record it.
"""

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import defusedxml.ElementTree as ET
import httpx
from bs4 import BeautifulSoup

from clinical_evidence import config
from clinical_evidence.models import (
    HIGH_IMPACT_JOURNALS,
    DateRange,
    MedicalDomain,
    NormalizedStudy,
    SourceResult,
    StudyType,
    classify_study_type,
    evidence_level_for,
    parse_publication_date,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Shared Infrastructure
# ──────────────────────────────────────────────────────────────

class RateLimitExceeded(Exception):
    """Raised when an adapter's request quota for the current window is spent."""

    def __init__(self, source: str, retry_after: float):
        self.source = source
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {source}; retry in {retry_after:.1f}s")


class WindowRateLimiter:
    """Fixed quota of requests per rolling window.

    Unlike a sleeping limiter, an exhausted quota is reported immediately so a
    slow source cannot stall the whole retrieval.

    Usage:
        limiter = WindowRateLimiter("PLOS", max_requests=10)
        async with limiter:
            await do_request()
    """

    def __init__(self, source: str, max_requests: int, window_seconds: float = config.RATE_LIMIT_WINDOW,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._stamps: deque = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float):
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    def acquire(self):
        """Take one request slot or raise RateLimitExceeded."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._stamps) >= self.max_requests:
                oldest = self._stamps[0] if self._stamps else now
                retry_after = self.window_seconds - (now - oldest)
                raise RateLimitExceeded(self.source, max(retry_after, 0.0))
            self._stamps.append(now)

    @property
    def remaining(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return max(self.max_requests - len(self._stamps), 0)

    async def __aenter__(self):
        self.acquire()
        return self

    async def __aexit__(self, *exc):
        pass


@dataclass
class AdapterFilters:
    """Per-adapter slice of the caller's filters."""
    max_results: int = 10
    date_range: Optional[DateRange] = None
    study_type: Optional[str] = None
    domain: MedicalDomain = MedicalDomain.ALL
    open_access_only: bool = False
    scoring_query: Optional[str] = None   # unexpanded question used for relevance

    def to_dict(self) -> dict:
        d = {"max_results": self.max_results, "domain": self.domain.value,
             "open_access_only": self.open_access_only}
        if self.date_range:
            d["date_range"] = {"start": self.date_range.start.isoformat(),
                               "end": self.date_range.end.isoformat()}
        if self.study_type:
            d["study_type"] = self.study_type
        return d


_BOOLEAN_WORDS = {"and", "or", "not"}
_STOPWORDS = {
    "the", "for", "with", "from", "into", "that", "this", "are", "was", "were",
    "what", "does", "how", "which", "versus", "between", "among", "date", "publication",
}


def query_terms(query: str) -> List[str]:
    """Distinct lowercase content words of a (possibly boolean) query string."""
    terms = []
    for word in re.findall(r"[a-z0-9][a-z0-9\-]*", (query or "").lower()):
        if word in _BOOLEAN_WORDS or word in _STOPWORDS or len(word) < 3 or word.isdigit():
            continue
        if word not in terms:
            terms.append(word)
    return terms


def term_fraction_relevance(text: str, query: str) -> float:
    """Percentage of query terms present anywhere in text."""
    terms = query_terms(query)
    if not terms:
        return 0.0
    lowered = (text or "").lower()
    hits = sum(1 for t in terms if t in lowered)
    return hits / len(terms) * 100


def clean_text(value: Any) -> str:
    """Flatten str / list / dict API fields to plain text with markup stripped."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(clean_text(v) for v in value if v).strip()
    if isinstance(value, dict):
        return " ".join(clean_text(v) for v in value.values() if v).strip()
    text = str(value)
    if "<" in text and ">" in text:
        text = BeautifulSoup(text, "lxml").get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def _first(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return clean_text(value[0]) if value else ""
    return clean_text(value)


def years_since(publication_date: str, today: Optional[date] = None) -> Optional[float]:
    published = parse_publication_date(publication_date)
    if published is None:
        return None
    today = today or date.today()
    return (today - published).days / 365.25


def recency_points(publication_date: str) -> int:
    """15 / 12 / 8 / 4 points for studies up to 1 / 3 / 5 / 10 years old."""
    age = years_since(publication_date)
    if age is None:
        return 0
    if age <= 1:
        return 15
    if age <= 3:
        return 12
    if age <= 5:
        return 8
    if age <= 10:
        return 4
    return 0


_LEVEL_POINTS = {1: 40, 2: 35, 3: 25, 4: 15, 5: 5}


class BaseSourceClient:
    """Common shape of a search adapter.

    Subclasses implement _search() and return NormalizedStudy records;
    search() wraps it with the failure policy every source shares.
    """

    SOURCE = ""
    BASE_URL = ""

    def __init__(self, requests_per_minute: int, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = config.HTTP_TIMEOUT):
        self.base_url = base_url or self.BASE_URL
        self.limiter = WindowRateLimiter(self.SOURCE, requests_per_minute)
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # One client per search call so the adapter can be reused across event loops
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport,
                                 headers={"User-Agent": config.USER_AGENT})

    async def search(self, query: str, filters: Optional[AdapterFilters] = None) -> SourceResult:
        filters = filters or AdapterFilters()
        try:
            records = await self._search(query, filters)
        except RateLimitExceeded:
            raise
        except Exception as e:
            logger.warning(f"{self.SOURCE} search failed: {e}")
            records = []
        return SourceResult(self.SOURCE, tuple(records[:filters.max_results]))

    async def _search(self, query: str, filters: AdapterFilters) -> List[NormalizedStudy]:
        raise NotImplementedError


# ──────────────────────────────────────────────────────────────
# PLOS Client
# ──────────────────────────────────────────────────────────────

class PLOSClient(BaseSourceClient):
    """Client for the PLOS Solr search API (https://api.plos.org/search).

    Auth: none. Rate: 10 req/min, 300 req/hour per the PLOS terms.
    """

    SOURCE = "PLOS"
    BASE_URL = config.PLOS_API_URL
    FIELDS = "id,title,author,journal,publication_date,abstract,subject,article_type,doi,counter_total_all"
    SUBJECT_FILTER = '(subject:"Medicine and Health Sciences" OR subject:"Clinical Medicine")'

    JOURNAL_IMPACT_FACTORS = {
        "PLOS Medicine": 11.069,
        "PLOS Biology": 9.163,
        "PLOS Genetics": 4.766,
        "PLOS ONE": 3.752,
        "PLOS Computational Biology": 4.708,
        "PLOS Pathogens": 6.218,
    }
    JOURNAL_REPUTATION = {
        "PLOS Medicine": 20,
        "PLOS Biology": 18,
        "PLOS Genetics": 15,
        "PLOS ONE": 12,
    }

    def __init__(self, **kwargs):
        super().__init__(config.PLOS_REQUESTS_PER_MINUTE, **kwargs)

    def _params(self, query: str, filters: AdapterFilters) -> list:
        params = [
            ("q", f"({query}) AND {self.SUBJECT_FILTER}"),
            ("wt", "json"),
            ("fl", self.FIELDS),
            ("rows", str(min(filters.max_results, 100))),
            ("start", "0"),
            ("sort", "score desc"),
            ("fq", 'doc_type:"full" AND article_type:"Research Article"'),
        ]
        if filters.date_range:
            start = filters.date_range.start.isoformat()
            end = filters.date_range.end.isoformat()
            params.append(("fq", f"publication_date:[{start}T00:00:00Z TO {end}T23:59:59Z]"))
        return params

    def _quality_score(self, journal: str, views: int, abstract: str) -> float:
        score = 0
        impact = self.JOURNAL_IMPACT_FACTORS.get(journal, 0)
        if impact >= 10:
            score += 40
        elif impact >= 5:
            score += 30
        elif impact >= 3:
            score += 20
        else:
            score += 10

        if views >= 100:
            score += 20
        elif views >= 50:
            score += 15
        elif views >= 20:
            score += 10
        elif views >= 5:
            score += 5

        if len(abstract) > 200:
            score += 20
        elif len(abstract) > 100:
            score += 15
        elif len(abstract) > 50:
            score += 10

        score += self.JOURNAL_REPUTATION.get(journal, 8)
        return min(score, 100)

    @staticmethod
    def _relevance_score(text: str, query: str) -> float:
        terms = query_terms(query)
        if not terms:
            return 0.0
        lowered = text.lower()
        matches = sum(len(re.findall(rf"\b{re.escape(t)}\b", lowered)) for t in terms)
        return min(matches / len(terms) * 20, 100)

    def _normalize_doc(self, doc: dict, scoring_query: str) -> NormalizedStudy:
        doi = _first(doc.get("doi")) or _first(doc.get("id"))
        title = _first(doc.get("title"))
        abstract = clean_text(doc.get("abstract"))
        journal = _first(doc.get("journal"))
        subjects = tuple(s.strip("/").split("/")[-1] for s in doc.get("subject", []) or [] if s)
        views = int(doc.get("counter_total_all") or 0)
        text = f"{title} {abstract} {' '.join(subjects)}"
        return NormalizedStudy(
            id=doi,
            title=title,
            source=self.SOURCE,
            abstract=abstract,
            authors=tuple(doc.get("author", []) or []),
            journal=journal,
            publication_date=(_first(doc.get("publication_date")) or "")[:10],
            url=f"https://journals.plos.org/plosone/article?id={doi}",
            raw_study_type=classify_study_type(f"{title} {abstract}").value,
            doi=doi,
            quality_score=self._quality_score(journal, views, abstract),
            relevance_score=self._relevance_score(text, scoring_query),
            is_open_access=True,
            has_full_text=True,
            subjects=subjects,
            citation_count=views,
            impact_factor=self.JOURNAL_IMPACT_FACTORS.get(journal),
        )

    async def _search(self, query: str, filters: AdapterFilters) -> List[NormalizedStudy]:
        async with self.limiter:
            async with self._client() as http:
                resp = await http.get(self.base_url, params=self._params(query, filters),
                                      headers={"Accept": "application/json"})
                resp.raise_for_status()
                docs = resp.json().get("response", {}).get("docs", [])
        scoring_query = filters.scoring_query or query
        records = [self._normalize_doc(d, scoring_query) for d in docs if d.get("title")]
        records.sort(key=lambda r: 0.6 * r.relevance_score + 0.4 * r.quality_score, reverse=True)
        logger.info(f"PLOS returned {len(records)} research articles")
        return records


# ──────────────────────────────────────────────────────────────
# BMC Client (Springer Nature metadata API)
# ──────────────────────────────────────────────────────────────

class BMCClient(BaseSourceClient):
    """Journal-scoped search of BioMed Central titles via the Springer API.

    Auth: SPRINGER_API_KEY (free registration). Without a key the client
    logs a warning and returns no records.
    """

    SOURCE = "BMC"
    BASE_URL = config.SPRINGER_API_URL

    DOMAIN_JOURNALS = {
        MedicalDomain.CARDIOVASCULAR: ["BMC Cardiovascular Disorders", "Cardiovascular Diabetology",
                                       "BMC Emergency Medicine"],
        MedicalDomain.ENDOCRINOLOGY: ["BMC Endocrine Disorders", "Diabetology & Metabolic Syndrome",
                                      "Thyroid Research"],
        MedicalDomain.PSYCHIATRY: ["BMC Psychiatry", "BMC Psychology",
                                   "International Journal of Mental Health Systems"],
        MedicalDomain.ONCOLOGY: ["BMC Cancer", "Molecular Cancer", "BMC Medical Genomics"],
        MedicalDomain.NEUROLOGY: ["BMC Neurology", "BMC Neuroscience", "Alzheimer's Research & Therapy"],
        MedicalDomain.INFECTIOUS_DISEASE: ["BMC Infectious Diseases", "Malaria Journal", "BMC Microbiology"],
        MedicalDomain.EMERGENCY_MEDICINE: ["BMC Emergency Medicine", "International Journal of Emergency Medicine",
                                           "Scandinavian Journal of Trauma, Resuscitation and Emergency Medicine"],
        MedicalDomain.PUBLIC_HEALTH: ["BMC Public Health", "International Journal of Health Geographics",
                                      "BMC Health Services Research"],
    }
    JOURNAL_IMPACT_FACTORS = {
        "BMC Medicine": 9.088,
        "Molecular Cancer": 27.401,
        "BMC Biology": 7.364,
        "Cardiovascular Diabetology": 8.785,
        "BMC Cardiovascular Disorders": 2.174,
        "BMC Psychiatry": 4.425,
        "BMC Public Health": 4.135,
        "BMC Cancer": 4.638,
    }
    DOMAIN_TERMS = {
        MedicalDomain.CARDIOVASCULAR: ["heart", "cardiac", "cardiovascular", "coronary", "myocardial",
                                       "hypertension", "arrhythmia"],
        MedicalDomain.ENDOCRINOLOGY: ["diabetes", "thyroid", "hormone", "endocrine", "insulin",
                                      "glucose", "metabolic"],
        MedicalDomain.PSYCHIATRY: ["depression", "anxiety", "psychiatric", "mental health",
                                   "bipolar", "schizophrenia", "psychotherapy"],
        MedicalDomain.ONCOLOGY: ["cancer", "tumor", "oncology", "chemotherapy", "radiotherapy",
                                 "metastasis", "carcinoma"],
    }
    FOCUS_KEYWORDS = ("Cardiovascular", "Cancer", "Psychiatry")

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(config.SPRINGER_REQUESTS_PER_MINUTE, **kwargs)
        self.api_key = api_key if api_key is not None else config.SPRINGER_API_KEY

    def journals_for(self, domain: MedicalDomain) -> List[str]:
        if domain is MedicalDomain.ALL:
            seen = []
            for journals in self.DOMAIN_JOURNALS.values():
                seen.extend(j for j in journals if j not in seen)
            return seen
        return list(self.DOMAIN_JOURNALS.get(domain, []))

    def _domain_of(self, journal: str) -> Optional[MedicalDomain]:
        for domain, journals in self.DOMAIN_JOURNALS.items():
            if journal in journals:
                return domain
        return None

    def _journal_query(self, query: str, journals: List[str], filters: AdapterFilters) -> str:
        parts = [f"({query})"]
        if journals:
            parts.append("(" + " OR ".join(f'journal:"{j}"' for j in journals) + ")")
        if filters.open_access_only:
            parts.append("openaccess:true")
        if filters.date_range:
            parts.append(f"onlinedatefrom:{filters.date_range.start.isoformat()}")
            parts.append(f"onlinedateto:{filters.date_range.end.isoformat()}")
        return " ".join(parts)

    def _quality_score(self, journal: str, abstract: str, publication_date: str, open_access: bool) -> float:
        score = 0
        impact = self.JOURNAL_IMPACT_FACTORS.get(journal, 0)
        if impact >= 20:
            score += 35
        elif impact >= 10:
            score += 30
        elif impact >= 5:
            score += 25
        elif impact >= 3:
            score += 20
        else:
            score += 15

        if open_access:
            score += 15

        if len(abstract) > 300:
            score += 20
        elif len(abstract) > 200:
            score += 15
        elif len(abstract) > 100:
            score += 10
        elif len(abstract) > 50:
            score += 5

        if "BMC" in journal:
            score += 10
        if any(k in journal for k in self.FOCUS_KEYWORDS):
            score += 5

        score += recency_points(publication_date)
        return min(score, 100)

    def _relevance_score(self, title: str, abstract: str, query: str, domain: Optional[MedicalDomain]) -> float:
        terms = query_terms(query)
        if not terms:
            return 0.0
        title_l = title.lower()
        abstract_l = abstract.lower()
        score = 0
        for t in terms:
            if t in title_l:
                score += 3
            if t in abstract_l:
                score += 2
        text = f"{title_l} {abstract_l}"
        score += sum(1 for t in self.DOMAIN_TERMS.get(domain, []) if t in text)
        if "systematic review" in text or "meta-analysis" in text:
            score += 2
        if "randomized controlled trial" in text or "randomised controlled trial" in text:
            score += 2
        return min(score / len(terms) * 15, 100)

    def _normalize_record(self, rec: dict, scoring_query: str) -> NormalizedStudy:
        title = clean_text(rec.get("title"))
        abstract = clean_text(rec.get("abstract"))
        journal = clean_text(rec.get("publicationName"))
        doi = clean_text(rec.get("doi"))
        pub_date = clean_text(rec.get("publicationDate") or rec.get("onlineDate"))
        open_access = str(rec.get("openaccess", "")).lower() == "true" or journal.startswith("BMC")
        urls = rec.get("url") or []
        url = next((u.get("value", "") for u in urls if isinstance(u, dict) and u.get("value")), "")
        if not url and doi:
            url = f"https://doi.org/{doi}"
        subjects = rec.get("keyword") or rec.get("subjects") or []
        domain = self._domain_of(journal)
        return NormalizedStudy(
            id=doi or clean_text(rec.get("identifier")) or title,
            title=title,
            source=self.SOURCE,
            abstract=abstract,
            authors=tuple(clean_text(c.get("creator")) for c in rec.get("creators", []) or []
                          if isinstance(c, dict) and c.get("creator")),
            journal=journal,
            publication_date=pub_date,
            url=url,
            raw_study_type=classify_study_type(f"{title} {abstract}").value,
            doi=doi,
            quality_score=self._quality_score(journal, abstract, pub_date, open_access),
            relevance_score=self._relevance_score(title, abstract, scoring_query, domain),
            is_open_access=open_access,
            has_full_text=open_access,
            subjects=tuple(clean_text(s) for s in subjects if s),
            impact_factor=self.JOURNAL_IMPACT_FACTORS.get(journal),
        )

    async def _search(self, query: str, filters: AdapterFilters) -> List[NormalizedStudy]:
        if not self.api_key:
            logger.warning("SPRINGER_API_KEY not set; skipping BMC search")
            return []
        journals = self.journals_for(filters.domain)
        # All journals go in one OR'd request: one quota slot per search
        async with self.limiter:
            async with self._client() as http:
                resp = await http.get(self.base_url, params={
                    "q": self._journal_query(query, journals, filters),
                    "p": min(filters.max_results, 50),
                    "api_key": self.api_key,
                })
                resp.raise_for_status()
                payload = resp.json()

        scoring_query = filters.scoring_query or query
        seen = set()
        records = []
        for rec in payload.get("records", []) or []:
            study = self._normalize_record(rec, scoring_query)
            key = study.doi.lower() or study.title.lower()
            if not study.title or key in seen:
                continue
            seen.add(key)
            records.append(study)

        def rank(r: NormalizedStudy) -> float:
            bonus = 10 if self._domain_of(r.journal) is filters.domain else 0
            return 0.6 * r.relevance_score + 0.4 * r.quality_score + bonus

        records.sort(key=rank, reverse=True)
        logger.info(f"BMC returned {len(records)} articles from {len(journals)} journals")
        return records


# ──────────────────────────────────────────────────────────────
# TRIP Database Client
# ──────────────────────────────────────────────────────────────

class TRIPClient(BaseSourceClient):
    """Client for the TRIP evidence-based medicine search API.

    Auth: TRIP_API_KEY. Results are ranked by evidence level, then quality,
    then relevance.
    """

    SOURCE = "TRIP"
    BASE_URL = config.TRIP_API_URL

    EVIDENCE_HIERARCHY = [
        (1, ("systematic review", "meta-analysis", "cochrane review")),
        (2, ("randomized controlled trial", "rct", "randomised controlled trial")),
        (3, ("cohort", "case-control", "observational study")),
        (4, ("case series", "case report", "cross-sectional study")),
        (5, ("expert opinion", "editorial", "commentary", "review")),
    ]
    SOURCE_REPUTATION = [
        (("cochrane",), 25),
        (("nejm", "new england", "lancet", "jama"), 22),
        (("bmj", "nature"), 20),
        (("plos", "bmc"), 15),
    ]
    GUIDELINE_TERMS = ("guideline", "recommendation", "consensus")
    CLINICAL_ANSWER_TERMS = ("clinical answer", "clinical qa", "best practice")
    MEDICAL_SUBJECTS = (
        "cardiology", "oncology", "neurology", "psychiatry", "endocrinology",
        "infectious disease", "emergency medicine", "public health", "pediatrics",
        "diabetes", "hypertension", "stroke", "cancer", "depression",
    )
    _LEVEL_TYPES = {1: StudyType.SYSTEMATIC_REVIEW, 2: StudyType.RCT, 3: StudyType.COHORT_STUDY,
                    4: StudyType.CASE_SERIES, 5: StudyType.OTHER}

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(config.TRIP_REQUESTS_PER_MINUTE, **kwargs)
        self.api_key = api_key if api_key is not None else config.TRIP_API_KEY

    @staticmethod
    def enhance_query(query: str) -> str:
        """Bias a query toward evidence-based sources."""
        return (f"({query}) AND (systematic review OR meta-analysis OR randomized controlled trial OR guideline)"
                f" AND (evidence OR clinical OR treatment OR therapy)"
                f" AND (humans OR patients OR clinical)")

    def evidence_level(self, text: str) -> int:
        lowered = text.lower()
        for level, cues in self.EVIDENCE_HIERARCHY:
            for cue in cues:
                if len(cue) <= 4:
                    if re.search(rf"\b{re.escape(cue)}\b", lowered):
                        return level
                elif cue in lowered:
                    return level
        return 5

    def _quality_score(self, level: int, publication: str, category: str, publication_date: str) -> float:
        score = _LEVEL_POINTS.get(level, 5)
        pub = publication.lower()
        for names, points in self.SOURCE_REPUTATION:
            if any(n in pub for n in names):
                score += points
                break
        else:
            score += 10
        cat = category.lower()
        if any(t in cat for t in self.GUIDELINE_TERMS):
            score += 20
        elif any(t in cat for t in self.CLINICAL_ANSWER_TERMS):
            score += 15
        score += recency_points(publication_date)
        return min(score, 100)

    def _normalize_document(self, doc, scoring_query: str) -> NormalizedStudy:
        def text(tag: str) -> str:
            return clean_text(doc.findtext(tag) or "")

        title = text("title")
        abstract = text("abstract") or text("description")
        category = text("category")
        publication = text("publication")
        pub_date = text("pubDate") or text("date")
        doi = text("doi")
        level = self.evidence_level(f"{category} {title} {abstract}")
        combined = f"{title} {abstract}".lower()
        subjects = tuple(s for s in self.MEDICAL_SUBJECTS if s in combined)
        is_answer = any(t in category.lower() for t in self.CLINICAL_ANSWER_TERMS)
        published = parse_publication_date(pub_date)
        return NormalizedStudy(
            id=doi or f"trip-{text('id') or title}",
            title=title,
            source=self.SOURCE,
            abstract=abstract,
            authors=tuple(a.strip() for a in text("authors").split(",") if a.strip()),
            journal=publication,
            publication_date=published.isoformat() if published else pub_date,
            url=text("link"),
            raw_study_type=self._LEVEL_TYPES[level].value,
            doi=doi,
            quality_score=self._quality_score(level, publication, category, pub_date),
            relevance_score=term_fraction_relevance(f"{title} {abstract}", scoring_query),
            is_open_access=not is_answer,
            has_full_text=not is_answer,
            subjects=subjects,
        )

    async def _search(self, query: str, filters: AdapterFilters) -> List[NormalizedStudy]:
        if not self.api_key:
            logger.warning("TRIP_API_KEY not set; skipping TRIP search")
            return []
        params = {
            "key": self.api_key,
            "criteria": self.enhance_query(query),
            "max": min(filters.max_results, 100),
            "sort": "relevance",
        }
        if filters.date_range:
            params["from_date"] = filters.date_range.start.year
            params["to_date"] = filters.date_range.end.year
        async with self.limiter:
            async with self._client() as http:
                resp = await http.get(self.base_url, params=params)
                resp.raise_for_status()
                root = ET.fromstring(resp.content)

        scoring_query = filters.scoring_query or query
        records = [self._normalize_document(d, scoring_query) for d in root.iter("document")]
        records = [r for r in records if r.title]
        records.sort(key=lambda r: (evidence_level_for(classify_study_type(r.raw_study_type)),
                                    -r.quality_score, -r.relevance_score))
        logger.info(f"TRIP returned {len(records)} documents")
        return records


# ──────────────────────────────────────────────────────────────
# PubMed Client
# ──────────────────────────────────────────────────────────────

_MONTHS = {m: i for i, m in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1)}


class PubMedClient(BaseSourceClient):
    """NCBI E-utilities client: esearch for PMIDs, efetch for article XML.

    Auth: optional PUBMED_API_KEY raises the NCBI quota from 3 to 10 req/s.
    """

    SOURCE = "PubMed"
    BASE_URL = config.PUBMED_BASE_URL

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(config.PUBMED_REQUESTS_PER_MINUTE, **kwargs)
        self.api_key = api_key if api_key is not None else config.PUBMED_API_KEY

    def _params(self, **extra) -> dict:
        p = {"db": "pubmed", **extra}
        if self.api_key:
            p["api_key"] = self.api_key
        return p

    @staticmethod
    def _pub_date(article) -> str:
        pub = article.find(".//PubDate")
        if pub is None:
            return ""
        year = pub.findtext("Year") or ""
        if not year:
            m = re.search(r"\b(19|20)\d{2}\b", pub.findtext("MedlineDate") or "")
            return m.group(0) if m else ""
        month_raw = (pub.findtext("Month") or "").strip()
        if not month_raw:
            return year
        month = _MONTHS.get(month_raw[:3].lower()) or (int(month_raw) if month_raw.isdigit() else 1)
        day = pub.findtext("Day") or "1"
        return f"{year}-{month:02d}-{int(day):02d}" if day.isdigit() else f"{year}-{month:02d}"

    @staticmethod
    def _quality_score(study_type: StudyType, abstract: str, journal: str, publication_date: str) -> float:
        score = _LEVEL_POINTS[evidence_level_for(study_type)]
        if len(abstract) > 1000:
            score += 20
        elif len(abstract) > 500:
            score += 15
        elif len(abstract) > 200:
            score += 10
        elif abstract:
            score += 5
        lowered = journal.lower()
        score += 20 if any(j in lowered for j in HIGH_IMPACT_JOURNALS) else 10
        score += recency_points(publication_date)
        return min(score, 100)

    def _parse_article(self, article, scoring_query: str) -> Optional[NormalizedStudy]:
        pmid = article.findtext(".//PMID") or ""
        title_node = article.find(".//ArticleTitle")
        title = clean_text("".join(title_node.itertext())) if title_node is not None else ""
        if not pmid or not title:
            return None
        abstract_parts = []
        for node in article.findall(".//AbstractText"):
            label = node.get("Label")
            body = clean_text("".join(node.itertext()))
            abstract_parts.append(f"{label}: {body}" if label else body)
        abstract = " ".join(p for p in abstract_parts if p)

        authors = []
        for author in article.findall(".//Author"):
            last = author.findtext("LastName")
            if last:
                initials = author.findtext("Initials") or ""
                authors.append(f"{last} {initials}".strip())

        journal = article.findtext(".//Journal/Title") or ""
        pub_types = [pt.text or "" for pt in article.findall(".//PublicationType")]
        doi = ""
        pmc = ""
        for aid in article.findall(".//ArticleId"):
            if aid.get("IdType") == "doi":
                doi = (aid.text or "").strip()
            elif aid.get("IdType") == "pmc":
                pmc = (aid.text or "").strip()

        study_type = classify_study_type(" ".join(pub_types))
        if study_type is StudyType.OTHER:
            study_type = classify_study_type(f"{title} {abstract}")
        mesh = tuple(d.text for d in article.findall(".//MeshHeading/DescriptorName") if d.text)
        pub_date = self._pub_date(article)
        return NormalizedStudy(
            id=doi or f"pmid:{pmid}",
            title=title,
            source=self.SOURCE,
            abstract=abstract,
            authors=tuple(authors),
            journal=journal,
            publication_date=pub_date,
            url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
            raw_study_type=study_type.value,
            doi=doi,
            pmid=pmid,
            quality_score=self._quality_score(study_type, abstract, journal, pub_date),
            relevance_score=term_fraction_relevance(f"{title} {abstract}", scoring_query),
            is_open_access=bool(pmc),
            has_full_text=bool(pmc),
            subjects=mesh,
        )

    async def _search(self, query: str, filters: AdapterFilters) -> List[NormalizedStudy]:
        term = f"({query}) AND free full text[sb]" if filters.open_access_only else query
        search_params = self._params(term=term, retmax=filters.max_results, retmode="json", sort="relevance")
        if filters.date_range:
            search_params.update({
                "datetype": "pdat",
                "mindate": filters.date_range.start.strftime("%Y/%m/%d"),
                "maxdate": filters.date_range.end.strftime("%Y/%m/%d"),
            })
        async with self._client() as http:
            async with self.limiter:
                resp = await http.get(f"{self.base_url}/esearch.fcgi", params=search_params)
                resp.raise_for_status()
                pmids = resp.json().get("esearchresult", {}).get("idlist", [])
            if not pmids:
                return []
            async with self.limiter:
                resp = await http.get(f"{self.base_url}/efetch.fcgi",
                                      params=self._params(id=",".join(pmids), rettype="abstract", retmode="xml"))
                resp.raise_for_status()
                root = ET.fromstring(resp.content)

        scoring_query = filters.scoring_query or query
        records = []
        for article in root.findall(".//PubmedArticle"):
            try:
                study = self._parse_article(article, scoring_query)
            except Exception as e:
                logger.debug(f"Skipping unparseable PubMed article: {e}")
                continue
            if study:
                records.append(study)
        logger.info(f"PubMed returned {len(records)} of {len(pmids)} articles")
        return records


def default_clients(transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, BaseSourceClient]:
    """One adapter per configured database, keyed by source name."""
    clients = [PLOSClient(transport=transport), BMCClient(transport=transport),
               TRIPClient(transport=transport), PubMedClient(transport=transport)]
    return {c.SOURCE: c for c in clients}
