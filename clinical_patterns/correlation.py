"""Association measures between patient factors across a cohort."""
from __future__ import annotations

import math
from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from .models import ClinicalSnapshot, CohortFilter, CorrelationResult, Significance

CONTINUOUS_FACTORS: tuple[str, ...] = (
    "age",
    "allergy_count",
    "visit_count",
    "vaccination_count",
    "diagnosis_count",
    "lab_abnormal_ratio",
    "risk",
)
CATEGORICAL_FACTORS: tuple[str, ...] = ("blood_type", "gender")

DEFAULT_FACTOR_PAIRS: tuple[tuple[str, str], ...] = (
    ("age", "visit_count"),
    ("age", "allergy_count"),
    ("allergy_count", "visit_count"),
    ("vaccination_count", "visit_count"),
    ("blood_type", "risk"),
)

STRONG_THRESHOLD = 0.7
MODERATE_THRESHOLD = 0.4
WEAK_THRESHOLD = 0.2
MIN_T_STATISTIC = 2.0


def factor_frame(
    snapshots: Iterable[ClinicalSnapshot],
    risk_scores: Mapping[str, float] | None = None,
) -> pd.DataFrame:
    """One row per patient, one column per factor."""

    scores = risk_scores or {}
    rows = [
        {
            "patient_id": snapshot.patient_id,
            "age": snapshot.age,
            "allergy_count": snapshot.allergy_count,
            "visit_count": snapshot.visit_count,
            "vaccination_count": snapshot.vaccination_count,
            "diagnosis_count": snapshot.diagnosis_count,
            "lab_abnormal_ratio": snapshot.lab_abnormal_ratio,
            "risk": scores.get(snapshot.patient_id),
            "blood_type": snapshot.blood_type,
            "gender": snapshot.gender,
        }
        for snapshot in snapshots
    ]
    columns = ["patient_id", *CONTINUOUS_FACTORS, *CATEGORICAL_FACTORS]
    frame = pd.DataFrame(rows, columns=columns)
    for name in CONTINUOUS_FACTORS:
        frame[name] = pd.to_numeric(frame[name], errors="coerce")
    return frame


def pearson(x: pd.Series, y: pd.Series) -> float:
    if x.std(ddof=0) == 0 or y.std(ddof=0) == 0:
        return 0.0
    return float(np.clip(np.corrcoef(x.to_numpy(float), y.to_numpy(float))[0, 1], -1.0, 1.0))


def correlation_ratio(categories: pd.Series, values: pd.Series) -> float:
    """Eta: share of the variance in ``values`` explained by ``categories``."""

    values = values.astype(float)
    total = float(((values - values.mean()) ** 2).sum())
    if total == 0:
        return 0.0
    grouped = values.groupby(categories.to_numpy())
    between = float((grouped.count() * (grouped.mean() - values.mean()) ** 2).sum())
    return float(min(1.0, math.sqrt(between / total)))


def cramers_v(a: pd.Series, b: pd.Series) -> float:
    observed = pd.crosstab(a, b).to_numpy(dtype=float)
    n = observed.sum()
    k = min(observed.shape) - 1
    if n == 0 or k <= 0:
        return 0.0
    expected = np.outer(observed.sum(axis=1), observed.sum(axis=0)) / n
    chi2 = float(((observed - expected) ** 2 / expected).sum())
    return float(min(1.0, math.sqrt(chi2 / (n * k))))


def t_statistic(r: float, n: int) -> float:
    if n <= 2:
        return 0.0
    if abs(r) >= 1.0:
        return math.inf
    return abs(r) * math.sqrt((n - 2) / (1 - r * r))


def classify(r: float, n: int) -> Significance:
    strength = abs(r)
    if t_statistic(r, n) < MIN_T_STATISTIC:
        return Significance.NONE
    if strength > STRONG_THRESHOLD:
        return Significance.STRONG
    if strength > MODERATE_THRESHOLD:
        return Significance.MODERATE
    if strength > WEAK_THRESHOLD:
        return Significance.WEAK
    return Significance.NONE


def _describe(factor_a: str, factor_b: str, r: float, significance: Significance, method: str, n: int) -> str:
    if significance is Significance.NONE:
        return f"No meaningful relationship between {factor_a} and {factor_b} (n={n})"
    if method == "pearson":
        direction = "positive" if r > 0 else "negative"
        return (
            f"{significance.value.title()} {direction} correlation between {factor_a} and {factor_b} "
            f"(r={r:.2f}, n={n})"
        )
    return f"{significance.value.title()} association between {factor_a} and {factor_b} ({method}={r:.2f}, n={n})"


class CorrelationAnalyzer:
    """Measures how strongly two factors move together in a cohort.

    Continuous pairs use Pearson's r, a categorical factor against a
    continuous one uses the correlation ratio (eta), and two categorical
    factors use Cramér's V.
    """

    def __init__(self, *, minimum_sample: int = 10) -> None:
        self._minimum_sample = minimum_sample

    def analyze(
        self,
        snapshots: Sequence[ClinicalSnapshot],
        factor_a: str,
        factor_b: str,
        *,
        risk_scores: Mapping[str, float] | None = None,
        cohort_filter: CohortFilter | None = None,
    ) -> CorrelationResult:
        kind_a = factor_kind(factor_a)
        kind_b = factor_kind(factor_b)
        if factor_a == factor_b:
            raise ValueError(f"Cannot correlate factor '{factor_a}' with itself")
        if cohort_filter is not None:
            snapshots = [snapshot for snapshot in snapshots if cohort_filter.matches(snapshot)]

        frame = factor_frame(snapshots, risk_scores)[[factor_a, factor_b]].dropna()
        n = len(frame)
        if kind_a == kind_b == "continuous":
            method = "pearson"
        elif kind_a == kind_b == "categorical":
            method = "cramers_v"
        else:
            method = "correlation_ratio"

        if n < self._minimum_sample:
            return CorrelationResult(
                factor_a=factor_a,
                factor_b=factor_b,
                correlation=None,
                significance=Significance.INSUFFICIENT_DATA,
                sample_size=n,
                method=method,
                insight=f"Not enough data to relate {factor_a} and {factor_b} (n={n} < {self._minimum_sample})",
            )

        a, b = frame[factor_a], frame[factor_b]
        if method == "pearson":
            r = pearson(a, b)
        elif method == "cramers_v":
            r = cramers_v(a.astype(str), b.astype(str))
        elif kind_a == "categorical":
            r = correlation_ratio(a.astype(str), b)
        else:
            r = correlation_ratio(b.astype(str), a)

        r = round(r, 6)
        significance = classify(r, n)
        return CorrelationResult(
            factor_a=factor_a,
            factor_b=factor_b,
            correlation=r,
            significance=significance,
            sample_size=n,
            method=method,
            insight=_describe(factor_a, factor_b, r, significance, method, n),
        )

    def analyze_default_pairs(
        self,
        snapshots: Sequence[ClinicalSnapshot],
        *,
        risk_scores: Mapping[str, float] | None = None,
        cohort_filter: CohortFilter | None = None,
        pairs: Iterable[tuple[str, str]] = DEFAULT_FACTOR_PAIRS,
    ) -> list[CorrelationResult]:
        return [
            self.analyze(snapshots, a, b, risk_scores=risk_scores, cohort_filter=cohort_filter)
            for a, b in pairs
        ]


def factor_kind(name: str) -> str:
    if name in CONTINUOUS_FACTORS:
        return "continuous"
    if name in CATEGORICAL_FACTORS:
        return "categorical"
    known = ", ".join(CONTINUOUS_FACTORS + CATEGORICAL_FACTORS)
    raise ValueError(f"Unknown correlation factor '{name}' (expected one of: {known})")


__all__ = [
    "CATEGORICAL_FACTORS",
    "CONTINUOUS_FACTORS",
    "CorrelationAnalyzer",
    "DEFAULT_FACTOR_PAIRS",
    "classify",
    "correlation_ratio",
    "cramers_v",
    "factor_kind",
    "factor_frame",
    "pearson",
    "t_statistic",
]
