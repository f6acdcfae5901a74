"""Record builders shared by the test modules."""
from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Sequence

from clinical_patterns.models import (
    AllergyRecord,
    AllergySeverity,
    DiagnosisRecord,
    LabResult,
    LabStatus,
    PatientProfile,
    PatientRecords,
    VaccinationRecord,
    VisitRecord,
)

TODAY = date(2024, 6, 30)


def days_ago(days: int) -> date:
    return TODAY - timedelta(days=days)


def make_patient(
    patient_id: str,
    *,
    age: int | None = 44,
    blood_type: str | None = "A+",
    gender: str | None = "F",
    visit_days: Iterable[int] = (),
    allergies: Sequence[AllergySeverity] = (),
    vaccination_days: Iterable[int] = (),
    normal_labs: int = 0,
    abnormal_labs: int = 0,
    diagnoses: int = 0,
    diagnosis_category: str = "Chronic",
    diagnosis_days: int = 100,
    symptoms: str = "",
) -> PatientRecords:
    """Build a patient whose facts are dated relative to ``TODAY``."""

    dob = TODAY.replace(year=TODAY.year - age) if age is not None else None
    return PatientRecords(
        profile=PatientProfile(patient_id=patient_id, date_of_birth=dob, blood_type=blood_type, gender=gender),
        visits=tuple(VisitRecord(patient_id, days_ago(d), symptoms=symptoms) for d in visit_days),
        allergies=tuple(
            AllergyRecord(patient_id, f"allergen-{i}", severity, diagnosed_date=days_ago(400))
            for i, severity in enumerate(allergies)
        ),
        vaccinations=tuple(VaccinationRecord(patient_id, "Influenza", days_ago(d)) for d in vaccination_days),
        lab_results=tuple(
            [LabResult(patient_id, "CBC", 1.0, LabStatus.NORMAL, days_ago(30)) for _ in range(normal_labs)]
            + [LabResult(patient_id, "HbA1c", 9.0, LabStatus.HIGH, days_ago(30)) for _ in range(abnormal_labs)]
        ),
        diagnoses=tuple(
            DiagnosisRecord(patient_id, f"D{i}", f"diagnosis-{i}", days_ago(diagnosis_days), category=diagnosis_category)
            for i in range(diagnoses)
        ),
    )


def high_risk_patient(patient_id: str = "p-high") -> PatientRecords:
    """Five recent visits, three allergies, two active diagnoses, 20% abnormal labs, never vaccinated.

    Scores 0.25*5/6 + 0.20*1 + 0.25*2/3 + 0.20*0.4 + 0.10*1 = 0.755 with default settings.
    """

    return make_patient(
        patient_id,
        visit_days=(1, 6, 11, 16, 21),
        allergies=(AllergySeverity.MILD, AllergySeverity.MILD, AllergySeverity.MODERATE),
        normal_labs=4,
        abnormal_labs=1,
        diagnoses=2,
    )


def healthy_patient(patient_id: str = "p-low") -> PatientRecords:
    return make_patient(patient_id, vaccination_days=(30,))
