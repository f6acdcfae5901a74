"""Per-patient analytics view."""
from __future__ import annotations

from typing import Sequence

from .alerts import actions_for_risk_factors
from .models import (
    ClinicalSnapshot,
    FactType,
    MedicalAlert,
    PatientAnalytics,
    RiskAssessment,
    RiskLevel,
)

HALF_YEAR_DAYS = 182
YEAR_DAYS = 365
MIN_EXPECTED_VACCINATIONS = 3


def predict_next_year_visits(snapshot: ClinicalSnapshot) -> int:
    """Naive projection: the busier of last year and the last half-year doubled."""

    last_year = snapshot.count_events(FactType.VISIT, YEAR_DAYS)
    last_half_year = snapshot.count_events(FactType.VISIT, HALF_YEAR_DAYS)
    return max(last_year, 2 * last_half_year)


def health_trend_score(snapshot: ClinicalSnapshot) -> float:
    """Higher when visits fall off against the half-year before; 0.5 without history."""

    recent = snapshot.count_events(FactType.VISIT, HALF_YEAR_DAYS)
    older = snapshot.count_events(FactType.VISIT, YEAR_DAYS) - recent
    if older <= 0:
        return 0.5
    return max(0.0, 1.0 - recent / older)


def recommended_actions(snapshot: ClinicalSnapshot, assessment: RiskAssessment) -> tuple[str, ...]:
    actions = list(actions_for_risk_factors(assessment.risk_factors))
    extra = []
    if assessment.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        extra.append("Schedule comprehensive health assessment")
    if snapshot.vaccination_count < MIN_EXPECTED_VACCINATIONS:
        extra.append("Update vaccination status")
    if snapshot.severe_allergy_count:
        extra.append("Allergy management review")
    for action in extra:
        if action not in actions:
            actions.append(action)
    return tuple(actions)


def build_patient_analytics(
    snapshot: ClinicalSnapshot,
    assessment: RiskAssessment,
    open_alerts: Sequence[MedicalAlert] = (),
) -> PatientAnalytics:
    return PatientAnalytics(
        patient_id=snapshot.patient_id,
        risk=assessment,
        total_visits=snapshot.visit_count,
        recent_visits=snapshot.recent_visit_count,
        last_visit=snapshot.last_visit_date,
        allergy_count=snapshot.allergy_count,
        vaccination_count=snapshot.vaccination_count,
        diagnosis_count=snapshot.diagnosis_count,
        lab_result_count=snapshot.lab_result_count,
        predicted_next_year_visits=predict_next_year_visits(snapshot),
        health_trend_score=round(health_trend_score(snapshot), 4),
        recommended_actions=recommended_actions(snapshot, assessment),
        open_alerts=tuple(open_alerts),
    )


__all__ = [
    "build_patient_analytics",
    "health_trend_score",
    "predict_next_year_visits",
    "recommended_actions",
]
