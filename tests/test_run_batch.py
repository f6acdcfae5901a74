from datetime import date, datetime, timezone
import json
from pathlib import Path

import pytest

from clinical_patterns.models import ClinicalSnapshot, MedicalAlert, Severity
from clinical_patterns.run_batch import (
    _load_patient_ids,
    build_engine,
    parse_args,
    run,
    to_jsonable,
)

HIGH_RISK_DOCUMENT = {
    "patient_id": "p1",
    "date_of_birth": "1980-06-30",
    "blood_type": "A+",
    "visits": [{"visit_date": f"2024-06-{day:02d}", "symptoms": "cough"} for day in (9, 14, 19, 24, 29)],
    "allergies": [
        {"allergen": "Peanuts", "severity": "MILD"},
        {"allergen": "Dust", "severity": "MILD"},
        {"allergen": "Pollen", "severity": "MODERATE"},
    ],
    "lab_results": [
        {"test_name": "CBC", "value": 1.0, "status": "NORMAL", "test_date": "2024-05-31"} for _ in range(4)
    ]
    + [{"test_name": "HbA1c", "value": 9.0, "status": "HIGH", "test_date": "2024-05-31"}],
    "diagnoses": [
        {"code": "E11", "name": "Diabetes", "category": "Endocrine", "diagnosed_date": "2024-03-22"},
        {"code": "I10", "name": "Hypertension", "category": "Cardiac", "diagnosed_date": "2024-03-22"},
    ],
}

HEALTHY_DOCUMENT = {
    "patient_id": "p2",
    "date_of_birth": "1990-01-15",
    "blood_type": "O-",
    "vaccinations": [{"vaccine_name": "Influenza", "administered_on": "2024-05-31"}],
}


def _write_patients(tmp_path: Path) -> Path:
    path = tmp_path / "patients.json"
    path.write_text(json.dumps([HIGH_RISK_DOCUMENT, HEALTHY_DOCUMENT]))
    return path


def test_to_jsonable_handles_engine_types():
    created = datetime(2024, 6, 30, 8, 0, tzinfo=timezone.utc)
    alert = MedicalAlert(
        alert_id="a1",
        patient_id="p1",
        alert_type="HIGH_RISK",
        severity=Severity.HIGH,
        message="m",
        confidence_score=0.75,
        created_at=created,
        updated_at=created,
        recommended_actions=("Call patient",),
    )
    snapshot = ClinicalSnapshot(patient_id="p1", as_of=date(2024, 6, 30), allergens=frozenset({"Dust", "Cats"}))

    payload = to_jsonable(alert)
    snapshot_payload = to_jsonable(snapshot)

    assert payload["severity"] == "HIGH"
    assert payload["created_at"] == "2024-06-30T08:00:00+00:00"
    assert payload["recommended_actions"] == ["Call patient"]
    assert snapshot_payload["allergens"] == ["Cats", "Dust"]
    assert "events" not in snapshot_payload
    json.dumps(payload)


def test_load_patient_ids_from_csv_and_text(tmp_path: Path):
    csv_path = tmp_path / "patients.csv"
    csv_path.write_text("patient_id,name\np1,Ann\n\np2,Bob\n")
    text_path = tmp_path / "more.txt"
    text_path.write_text("p3\n\n p4 \n")

    args = parse_args(
        ["--data", "x.json", "--patient", "p0", "--patient-file", str(csv_path), "--patient-file", str(text_path)]
    )

    assert _load_patient_ids(args) == ["p0", "p1", "p2", "p3", "p4"]


def test_parse_args_defaults():
    args = parse_args(["--data", "patients.json", "--as-of", "2024-06-30"])

    assert args.data == Path("patients.json")
    assert args.as_of == date(2024, 6, 30)
    assert args.report == "detection"
    assert args.patient is None
    assert args.indent is None


@pytest.mark.asyncio
async def test_detection_report_end_to_end(tmp_path: Path):
    args = parse_args(["--data", str(_write_patients(tmp_path)), "--as-of", "2024-06-30"])
    engine = build_engine(args)

    result = await run(engine, args, [])

    report = result["report"]
    assert report["cohort_size"] == 2
    assert report["high_risk_patients"] == ["p1"]
    assert report["failed_patterns"] == {}
    assert [alert["alert_type"] for alert in result["alerts"]] == ["HIGH_RISK"]
    json.dumps(result)


@pytest.mark.asyncio
async def test_settings_file_is_merged_over_defaults(tmp_path: Path):
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps({"risk_bands": {"high": 0.8, "critical": 0.9}}))
    args = parse_args(
        ["--data", str(_write_patients(tmp_path)), "--as-of", "2024-06-30", "--settings", str(settings_path)]
    )

    engine = build_engine(args)
    result = await run(engine, args, ["p1"])

    assert engine.settings.risk_bands.medium == 0.3
    assert result["report"]["processed_patients"] == ["p1"]
    assert result["report"]["risk_assessments"][0]["risk_level"] == "MEDIUM"
    assert result["alerts"] == []


@pytest.mark.asyncio
async def test_custom_patterns_replace_the_library(tmp_path: Path):
    patterns_path = tmp_path / "patterns.json"
    patterns_path.write_text(
        json.dumps(
            [
                {
                    "id": "allergic",
                    "name": "Allergic Patients",
                    "trigger": {"type": "comparison", "field": "allergy_count", "op": ">=", "value": 1},
                    "outcome": {"type": "comparison", "field": "recent_visit_count", "op": ">=", "value": 1},
                    "minimum_cases": 1,
                }
            ]
        )
    )
    args = parse_args(["--data", str(_write_patients(tmp_path)), "--as-of", "2024-06-30", "--patterns", str(patterns_path)])

    engine = build_engine(args)
    result = await run(engine, args, [])

    assert [pattern.pattern_id for pattern in engine.catalog.values()] == ["allergic"]
    assert engine.catalog.get("allergic").confidence_threshold == engine.settings.default_confidence_threshold
    assert sorted(alert["alert_type"] for alert in result["alerts"]) == ["Allergic Patients", "HIGH_RISK"]


@pytest.mark.asyncio
async def test_population_reports(tmp_path: Path):
    data = str(_write_patients(tmp_path))

    seasonal_args = parse_args(
        ["--data", data, "--as-of", "2024-06-30", "--report", "seasonal", "--start", "2024-06-01"]
    )
    seasonal = await run(build_engine(seasonal_args), seasonal_args, [])

    blood_args = parse_args(["--data", data, "--as-of", "2024-06-30", "--report", "blood_type"])
    blood = await run(build_engine(blood_args), blood_args, [])

    assert [(item["month"], item["visit_count"]) for item in seasonal] == [(6, 5)]
    assert [item["group"] for item in blood] == ["A+", "O-"]
