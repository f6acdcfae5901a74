"""Feature engineering helpers that turn raw records into snapshots."""
from __future__ import annotations

from datetime import date
from typing import Final

from .models import (
    ClinicalEvent,
    ClinicalSnapshot,
    FactType,
    PatientRecords,
)

_DEFAULT_RECENT_WINDOW_DAYS: Final[int] = 90


def age_on(date_of_birth: date | None, as_of: date) -> int | None:
    """Whole years between birth and ``as_of``."""

    if date_of_birth is None:
        return None
    years = as_of.year - date_of_birth.year
    if (as_of.month, as_of.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return max(0, years)


def build_snapshot(
    records: PatientRecords,
    as_of: date,
    *,
    recent_window_days: int = _DEFAULT_RECENT_WINDOW_DAYS,
) -> ClinicalSnapshot:
    """Aggregate one patient's records into a ``ClinicalSnapshot``.

    Records dated after ``as_of`` are ignored so a snapshot never sees the
    future relative to its own date.
    """

    profile = records.profile
    recent_start = as_of.toordinal() - recent_window_days

    visits = [v for v in records.visits if v.visit_date <= as_of]
    allergies = [
        a for a in records.allergies if a.is_active and (a.diagnosed_date is None or a.diagnosed_date <= as_of)
    ]
    vaccinations = [v for v in records.vaccinations if v.administered_on <= as_of]
    labs = [lab for lab in records.lab_results if lab.test_date <= as_of]
    diagnoses = [d for d in records.diagnoses if d.diagnosed_date <= as_of]
    active_diagnoses = [
        d for d in diagnoses if d.is_active and (d.resolved_date is None or d.resolved_date > as_of)
    ]
    abnormal_labs = [lab for lab in labs if lab.status.is_abnormal]

    events: list[ClinicalEvent] = []
    events.extend(ClinicalEvent(FactType.VISIT, v.visit_date, v.visit_type) for v in visits)
    events.extend(
        ClinicalEvent(FactType.ALLERGY, a.diagnosed_date, a.severity.value)
        for a in allergies
        if a.diagnosed_date is not None
    )
    events.extend(ClinicalEvent(FactType.VACCINATION, v.administered_on, v.vaccine_name) for v in vaccinations)
    events.extend(ClinicalEvent(FactType.LAB_ABNORMAL, lab.test_date, lab.test_name) for lab in abnormal_labs)
    events.extend(ClinicalEvent(FactType.DIAGNOSIS, d.diagnosed_date, d.category) for d in diagnoses)
    events.sort(key=lambda event: (event.occurred_on, event.fact_type.value))

    return ClinicalSnapshot(
        patient_id=profile.patient_id,
        as_of=as_of,
        age=age_on(profile.date_of_birth, as_of),
        blood_type=profile.blood_type,
        gender=profile.gender,
        visit_count=len(visits),
        recent_visit_count=sum(1 for v in visits if v.visit_date.toordinal() >= recent_start),
        last_visit_date=max((v.visit_date for v in visits), default=None),
        allergy_count=len(allergies),
        severe_allergy_count=sum(1 for a in allergies if a.severity.is_severe),
        allergy_severities=frozenset(a.severity.value for a in allergies),
        allergens=frozenset(a.allergen for a in allergies),
        vaccination_count=len(vaccinations),
        last_vaccination_date=max((v.administered_on for v in vaccinations), default=None),
        diagnosis_count=len(diagnoses),
        active_diagnosis_count=len(active_diagnoses),
        diagnosis_categories=frozenset(d.category for d in active_diagnoses if d.category),
        lab_result_count=len(labs),
        lab_abnormal_count=len(abnormal_labs),
        lab_abnormal_ratio=len(abnormal_labs) / len(labs) if labs else 0.0,
        events=tuple(events),
    )
