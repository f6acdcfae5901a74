from datetime import date

from clinical_builders import TODAY, days_ago, make_patient
from clinical_patterns.features import age_on, build_snapshot
from clinical_patterns.models import (
    AllergyRecord,
    AllergySeverity,
    DiagnosisRecord,
    FactType,
    PatientProfile,
    PatientRecords,
    VisitRecord,
)


def test_age_on_counts_whole_years():
    assert age_on(date(1980, 7, 1), date(2024, 6, 30)) == 43
    assert age_on(date(1980, 6, 30), date(2024, 6, 30)) == 44
    assert age_on(None, TODAY) is None


def test_snapshot_aggregates_counts_and_ratios():
    records = make_patient(
        "p1",
        visit_days=(5, 50, 120),
        allergies=(AllergySeverity.SEVERE, AllergySeverity.MILD),
        vaccination_days=(400, 30),
        normal_labs=3,
        abnormal_labs=1,
        diagnoses=2,
        diagnosis_category="Respiratory",
    )

    snapshot = build_snapshot(records, TODAY)

    assert snapshot.visit_count == 3
    assert snapshot.recent_visit_count == 2
    assert snapshot.last_visit_date == days_ago(5)
    assert snapshot.allergy_count == 2
    assert snapshot.severe_allergy_count == 1
    assert snapshot.allergy_severities == frozenset({"SEVERE", "MILD"})
    assert snapshot.vaccination_count == 2
    assert snapshot.days_since_last_vaccination == 30
    assert snapshot.lab_abnormal_ratio == 0.25
    assert snapshot.active_diagnosis_count == 2
    assert snapshot.diagnosis_categories == frozenset({"Respiratory"})
    assert snapshot.count_events(FactType.VISIT, 90) == 2
    assert snapshot.count_events(FactType.LAB_ABNORMAL, 90) == 1


def test_snapshot_ignores_future_and_inactive_records():
    records = PatientRecords(
        profile=PatientProfile("p1"),
        visits=(VisitRecord("p1", days_ago(3)), VisitRecord("p1", date(2024, 7, 15))),
        allergies=(
            AllergyRecord("p1", "Dust", AllergySeverity.MILD, is_active=False),
            AllergyRecord("p1", "Latex", AllergySeverity.MODERATE, diagnosed_date=date(2024, 8, 1)),
        ),
        diagnoses=(
            DiagnosisRecord("p1", "J01", "Sinusitis", days_ago(60), resolved_date=days_ago(10)),
            DiagnosisRecord("p1", "E11", "Diabetes", days_ago(600), category="Endocrine"),
        ),
    )

    snapshot = build_snapshot(records, TODAY)

    assert snapshot.visit_count == 1
    assert snapshot.allergy_count == 0
    assert snapshot.diagnosis_count == 2
    assert snapshot.active_diagnosis_count == 1
    assert snapshot.diagnosis_categories == frozenset({"Endocrine"})
    assert snapshot.lab_abnormal_ratio == 0.0
    assert snapshot.days_since_last_vaccination is None
