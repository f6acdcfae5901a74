#!/usr/bin/env python3
"""Shared helpers for summarising detection run exports.

An export is the JSON written by ``python -m clinical_patterns.run_batch``:
``{"report": {...}, "alerts": [...]}``.
"""
from __future__ import annotations

import csv
import json
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List

SEVERITY_ORDER = ("CRITICAL", "HIGH", "MEDIUM", "LOW")

PatientSummary = Dict[str, Any]


def read_patient_ids(csv_path: Path) -> List[str]:
    """Return patient IDs from the first column of a CSV file."""

    ids: List[str] = []
    with csv_path.open(newline="") as handle:
        reader = csv.reader(handle)
        for row in reader:
            if not row:
                continue
            value = row[0].strip()
            if not value:
                continue
            if value.lower() in {"patient_id", "id"} and not ids:
                continue
            ids.append(value)
    return ids


def load_export(path: Path) -> Dict[str, Any]:
    """Parse a run export JSON file."""

    with path.open() as handle:
        return json.load(handle)


def derive_patient_ids(
    data: Dict[str, Any],
    csv_path: Path | None,
    manual: Iterable[str] | None,
) -> List[str]:
    """Return an ordered list of patient IDs, respecting CSV/manual filters."""

    ordered: List[str] = []
    seen: set[str] = set()

    def add_many(values: Iterable[str] | None) -> None:
        if not values:
            return
        for value in values:
            if value in seen:
                continue
            ordered.append(value)
            seen.add(value)

    if csv_path:
        add_many(read_patient_ids(csv_path))
    add_many(manual)

    if not ordered:
        report = data.get("report", {})
        add_many(sorted(report.get("processed_patients", [])))
        add_many(sorted(alert["patient_id"] for alert in data.get("alerts", [])))

    return ordered


def summarise_patient(alerts: Iterable[Dict[str, Any]], assessment: Dict[str, Any] | None) -> PatientSummary:
    """Alert counts by type and severity plus the patient's risk, if scored."""

    by_type: Counter[str] = Counter()
    by_severity: Counter[str] = Counter()
    for alert in alerts:
        by_type[alert.get("alert_type", "")] += 1
        by_severity[alert.get("severity", "")] += 1

    return {
        "alerts": sum(by_type.values()),
        "alert_types": dict(sorted(by_type.items())),
        "severities": {level: by_severity[level] for level in SEVERITY_ORDER if by_severity[level]},
        "risk_score": assessment.get("risk_score") if assessment else None,
        "risk_level": assessment.get("risk_level") if assessment else None,
    }


def build_report(data: Dict[str, Any], patient_ids: Iterable[str]) -> Dict[str, Any]:
    """Create a combined report for the requested patients."""

    run = data.get("report", {})
    assessments = {item["patient_id"]: item for item in run.get("risk_assessments", [])}
    alerts_by_patient: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for alert in data.get("alerts", []):
        alerts_by_patient[alert["patient_id"]].append(alert)

    report: Dict[str, Any] = {
        "patients": {},
        "cohort": {
            "total_alerts": 0,
            "alert_types": {},
            "risk_levels": {},
        },
        "failed_patterns": dict(run.get("failed_patterns", {})),
        "missing_patients": [],
    }

    cohort_types: Counter[str] = Counter()
    cohort_levels: Counter[str] = Counter()
    for patient_id in patient_ids:
        assessment = assessments.get(patient_id)
        patient_alerts = alerts_by_patient.get(patient_id, [])
        if assessment is None and not patient_alerts:
            report["missing_patients"].append(patient_id)
            continue

        summary = summarise_patient(patient_alerts, assessment)
        report["patients"][patient_id] = summary
        report["cohort"]["total_alerts"] += summary["alerts"]
        cohort_types.update(summary["alert_types"])
        if summary["risk_level"]:
            cohort_levels[summary["risk_level"]] += 1

    report["cohort"]["alert_types"] = dict(sorted(cohort_types.items()))
    report["cohort"]["risk_levels"] = dict(sorted(cohort_levels.items()))
    report["missing_patients"].sort()

    return report


def iter_patient_alert_rows(report: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Yield row dicts for per-patient alert counts."""

    for patient_id in sorted(report.get("patients", {})):
        summary = report["patients"][patient_id]
        for alert_type, count in summary["alert_types"].items():
            yield {
                "patient_id": patient_id,
                "alert_type": alert_type,
                "alerts": count,
                "risk_level": summary["risk_level"],
            }


def iter_cohort_alert_rows(report: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Yield row dicts for cohort-level alert counts."""

    for alert_type, count in report.get("cohort", {}).get("alert_types", {}).items():
        yield {"alert_type": alert_type, "alerts": count}


def report_to_rows(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return per-patient rows for DataFrame-friendly usage."""

    return list(iter_patient_alert_rows(report))
