"""Cohort breakdowns by blood type and age group."""
from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from .models import ClinicalSnapshot, CohortBreakdown, RiskAssessment, RiskLevel

AGE_GROUP_EDGES = (0, 18, 35, 50, 65, 80)
AGE_GROUP_LABELS = ("0-17", "18-34", "35-49", "50-64", "65-79", "80+")
UNKNOWN_GROUP = "Unknown"

BREAKDOWN_DIMENSIONS = ("blood_type", "age_group")


def age_group(age: int | None) -> str:
    if age is None:
        return UNKNOWN_GROUP
    index = int(np.searchsorted(AGE_GROUP_EDGES, age, side="right")) - 1
    return AGE_GROUP_LABELS[max(0, index)]


def _population_frame(
    snapshots: Sequence[ClinicalSnapshot],
    assessments: Mapping[str, RiskAssessment],
) -> pd.DataFrame:
    high_levels = (RiskLevel.HIGH, RiskLevel.CRITICAL)
    rows = []
    for snapshot in snapshots:
        assessment = assessments.get(snapshot.patient_id)
        rows.append(
            {
                "blood_type": snapshot.blood_type or UNKNOWN_GROUP,
                "age_group": age_group(snapshot.age),
                "age": snapshot.age,
                "visits": snapshot.visit_count,
                "allergies": snapshot.allergy_count,
                "lab_abnormal_ratio": snapshot.lab_abnormal_ratio,
                "high_risk": bool(assessment and assessment.risk_level in high_levels),
            }
        )
    frame = pd.DataFrame(
        rows,
        columns=["blood_type", "age_group", "age", "visits", "allergies", "lab_abnormal_ratio", "high_risk"],
    )
    frame["age"] = pd.to_numeric(frame["age"], errors="coerce")
    return frame


def summarize(
    snapshots: Sequence[ClinicalSnapshot],
    assessments: Mapping[str, RiskAssessment],
    by: str,
) -> list[CohortBreakdown]:
    """Group the cohort by ``blood_type`` or ``age_group``."""

    if by not in BREAKDOWN_DIMENSIONS:
        raise ValueError(f"Unsupported breakdown '{by}' (expected one of: {', '.join(BREAKDOWN_DIMENSIONS)})")

    frame = _population_frame(snapshots, assessments)
    if frame.empty:
        return []
    grouped = frame.groupby(by, sort=True).agg(
        count=("visits", "size"),
        average_age=("age", "mean"),
        average_visits=("visits", "mean"),
        average_allergies=("allergies", "mean"),
        average_lab_abnormal_ratio=("lab_abnormal_ratio", "mean"),
        high_risk_count=("high_risk", "sum"),
    )

    if by == "age_group":
        order = [label for label in (*AGE_GROUP_LABELS, UNKNOWN_GROUP) if label in grouped.index]
        grouped = grouped.loc[order]

    breakdowns = []
    for group, row in grouped.iterrows():
        count = int(row["count"])
        high_risk = int(row["high_risk_count"])
        average_age = None if pd.isna(row["average_age"]) else round(float(row["average_age"]), 2)
        breakdowns.append(
            CohortBreakdown(
                group=str(group),
                count=count,
                average_age=average_age,
                average_visits=round(float(row["average_visits"]), 2),
                average_allergies=round(float(row["average_allergies"]), 2),
                average_lab_abnormal_ratio=round(float(row["average_lab_abnormal_ratio"]), 4),
                high_risk_count=high_risk,
                risk_percentage=round(high_risk / count * 100.0, 2),
            )
        )
    return breakdowns


def summarize_by_blood_type(
    snapshots: Sequence[ClinicalSnapshot], assessments: Mapping[str, RiskAssessment]
) -> list[CohortBreakdown]:
    return summarize(snapshots, assessments, "blood_type")


def summarize_by_age_group(
    snapshots: Sequence[ClinicalSnapshot], assessments: Mapping[str, RiskAssessment]
) -> list[CohortBreakdown]:
    return summarize(snapshots, assessments, "age_group")


__all__ = [
    "AGE_GROUP_LABELS",
    "BREAKDOWN_DIMENSIONS",
    "age_group",
    "summarize",
    "summarize_by_age_group",
    "summarize_by_blood_type",
]
