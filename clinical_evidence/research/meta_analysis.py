"""
Deterministic random-effects meta-analysis.
No LLM involvement: effect sizes are read from abstracts with a regex and
pooled with plain arithmetic.

Ratio measures (HR, RR, OR) reported with a 95% CI are pooled on the log
scale with the DerSimonian-Laird estimator:

    y_i = ln(ratio_i)          se_i = (ln(upper) - ln(lower)) / (2 * 1.96)
    Q   = sum w_i (y_i - y_fixed)^2,   w_i = 1 / se_i^2
    tau^2 = max(0, (Q - df) / (sum w - sum w^2 / sum w))
    I^2 = max(0, (Q - df) / Q) * 100
"""

import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional

from clinical_evidence.models import StudyType, UnifiedStudy

logger = logging.getLogger(__name__)

Z_95 = 1.96
POOLABLE_TYPES = (StudyType.RCT, StudyType.SYSTEMATIC_REVIEW)

_MEASURE_NAMES = {
    "hazard ratio": "HR", "hr": "HR",
    "risk ratio": "RR", "relative risk": "RR", "rr": "RR",
    "odds ratio": "OR", "or": "OR",
}
_NUMBER = r"\d+(?:\.\d+)?"
_EFFECT_RE = re.compile(
    r"\b(?P<measure>hazard ratio|risk ratio|relative risk|odds ratio|(?-i:HR|RR|OR))\b"
    r"(?:\s+(?:was|were|is|of))?"
    r"\s*(?:[\(\[](?-i:HR|RR|OR)[\)\]])?\s*[,:=]?\s*(?P<est>" + _NUMBER + r")"
    r"[^0-9]{0,40}?95\s*%\s*(?:CI|confidence interval)(?:\s*\[CI\])?\s*[,:=]?\s*"
    r"(?P<lo>" + _NUMBER + r")\s*(?:-|–|—|to|,)\s*(?P<hi>" + _NUMBER + r")",
    re.IGNORECASE,
)


@dataclass
class StudyEffect:
    study_id: str
    measure: str            # "HR", "RR" or "OR"
    estimate: float
    ci_lower: float
    ci_upper: float

    @property
    def log_estimate(self) -> float:
        return math.log(self.estimate)

    @property
    def standard_error(self) -> float:
        return (math.log(self.ci_upper) - math.log(self.ci_lower)) / (2 * Z_95)


@dataclass
class MetaAnalysisResult:
    outcome: str                    # pooled measure, e.g. "HR"
    pooled_effect: float
    ci_lower: float
    ci_upper: float
    i_squared: float                # percent
    tau_squared: float
    q_statistic: float
    studies_included: int
    quality: str                    # "High" | "Medium" | "Low"
    interpretation: str
    forest_plot_data: List[StudyEffect] = field(default_factory=list)

    @property
    def significant(self) -> bool:
        return self.ci_upper < 1 or self.ci_lower > 1


def extract_effect(study: UnifiedStudy) -> Optional[StudyEffect]:
    """First ratio estimate with a usable 95% CI in the study's abstract."""
    for m in _EFFECT_RE.finditer(study.abstract or ""):
        try:
            est, lo, hi = float(m.group("est")), float(m.group("lo")), float(m.group("hi"))
        except ValueError:
            continue
        if lo <= 0 or not (lo <= est <= hi) or lo == hi:
            continue
        measure = _MEASURE_NAMES[m.group("measure").lower()]
        return StudyEffect(study.id, measure, est, lo, hi)
    return None


def heterogeneity_label(i_squared: float) -> str:
    if i_squared <= 25:
        return "low"
    if i_squared <= 50:
        return "moderate"
    return "substantial"


def quality_tag(i_squared: float, k: int) -> str:
    if i_squared <= 25 and k >= 3:
        return "High"
    if i_squared <= 50:
        return "Medium"
    return "Low"


def pool_effects(effects: List[StudyEffect]) -> Optional[MetaAnalysisResult]:
    """DerSimonian-Laird random-effects pooling. Needs at least two effects."""
    effects = [e for e in effects if e.standard_error > 0]
    k = len(effects)
    if k < 2:
        return None

    y = [e.log_estimate for e in effects]
    w = [1 / e.standard_error ** 2 for e in effects]
    sum_w = sum(w)
    y_fixed = sum(wi * yi for wi, yi in zip(w, y)) / sum_w
    q = sum(wi * (yi - y_fixed) ** 2 for wi, yi in zip(w, y))
    df = k - 1
    c = sum_w - sum(wi ** 2 for wi in w) / sum_w
    tau2 = max(0.0, (q - df) / c) if c > 0 else 0.0
    i2 = max(0.0, (q - df) / q) * 100 if q > 0 else 0.0

    w_star = [1 / (e.standard_error ** 2 + tau2) for e in effects]
    mu = sum(wi * yi for wi, yi in zip(w_star, y)) / sum(w_star)
    se_mu = math.sqrt(1 / sum(w_star))
    pooled = math.exp(mu)
    lower = math.exp(mu - Z_95 * se_mu)
    upper = math.exp(mu + Z_95 * se_mu)

    measure = effects[0].measure
    significant = upper < 1 or lower > 1
    interpretation = (
        f"Pooled analysis of {k} studies shows "
        f"{'a statistically significant' if significant else 'no statistically significant'} effect "
        f"({measure} {pooled:.2f}, 95% CI {lower:.2f}-{upper:.2f}) "
        f"with {heterogeneity_label(i2)} heterogeneity (I² = {i2:.0f}%)"
    )
    return MetaAnalysisResult(
        outcome=measure,
        pooled_effect=round(pooled, 4),
        ci_lower=round(lower, 4),
        ci_upper=round(upper, 4),
        i_squared=round(i2, 1),
        tau_squared=round(tau2, 6),
        q_statistic=round(q, 4),
        studies_included=k,
        quality=quality_tag(i2, k),
        interpretation=interpretation,
        forest_plot_data=list(effects),
    )


def perform_meta_analysis(studies: List[UnifiedStudy]) -> List[MetaAnalysisResult]:
    """Pool the most frequently reported ratio measure across eligible studies.

    Only RCTs and systematic reviews are eligible; fewer than two eligible
    studies, or fewer than two extractable effects, yields an empty list.
    """
    eligible = [s for s in studies if s.study_type in POOLABLE_TYPES]
    if len(eligible) < 2:
        return []

    by_measure: "OrderedDict[str, List[StudyEffect]]" = OrderedDict()
    for s in eligible:
        effect = extract_effect(s)
        if effect:
            by_measure.setdefault(effect.measure, []).append(effect)
    if not by_measure:
        logger.info(f"Meta-analysis skipped: no extractable effects in {len(eligible)} eligible studies")
        return []

    measure, effects = max(by_measure.items(), key=lambda kv: len(kv[1]))
    result = pool_effects(effects)
    if result is None:
        logger.info(f"Meta-analysis skipped: only {len(effects)} extractable {measure} estimate(s)")
        return []
    logger.info(f"Meta-analysis: {result.interpretation}")
    return [result]


def format_meta_analysis_report(results: List[MetaAnalysisResult]) -> str:
    """Format pooled results as a markdown table."""
    if not results:
        return "Fewer than two studies reported poolable effect sizes. Meta-analysis not possible.\n"

    lines = []
    for r in results:
        lines += [
            f"## Random-Effects Meta-Analysis ({r.outcome})\n",
            "| Study | Estimate | 95% CI |",
            "|-------|----------|--------|",
        ]
        for e in r.forest_plot_data:
            lines.append(f"| {e.study_id} | {e.estimate:.2f} | {e.ci_lower:.2f}-{e.ci_upper:.2f} |")
        lines.append(f"| **Pooled** | **{r.pooled_effect:.2f}** | **{r.ci_lower:.2f}-{r.ci_upper:.2f}** |")
        lines.append("")
        lines.append(f"- I² = {r.i_squared:.1f}%, tau² = {r.tau_squared:.4f}, quality: {r.quality}")
        lines.append(f"- {r.interpretation}")
    return "\n".join(lines)
