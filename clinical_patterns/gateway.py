"""Read-only access to patient clinical data.

The engine only talks to a :class:`ClinicalDataGateway`. The in-memory
implementation here backs the command-line runner and the tests; the HTTP
implementation lives in ``api_clients.clinical_gateway_client``.

Patient JSON files look like::

    {
        "patient_id": "p-001",
        "date_of_birth": "1980-04-02",
        "blood_type": "A+",
        "gender": "F",
        "visits": [{"visit_date": "2024-01-05", "symptoms": "cough", "visit_type": "CONSULTATION"}],
        "allergies": [{"allergen": "Peanuts", "severity": "SEVERE", "diagnosed_date": "2020-03-01"}],
        "vaccinations": [{"vaccine_name": "Influenza", "administered_on": "2023-10-01"}],
        "lab_results": [{"test_name": "HbA1c", "value": 7.1, "status": "HIGH", "test_date": "2024-01-05"}],
        "diagnoses": [{"code": "J45", "name": "Asthma", "category": "Respiratory", "diagnosed_date": "2021-06-01"}]
    }
"""
from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from .errors import DataUnavailableError
from .features import build_snapshot
from .models import (
    AllergyRecord,
    AllergySeverity,
    ClinicalSnapshot,
    CohortFilter,
    DiagnosisRecord,
    LabResult,
    LabStatus,
    PatientProfile,
    PatientRecords,
    VaccinationRecord,
    VisitRecord,
)


class ClinicalDataGateway(Protocol):
    """Async source of patient snapshots and visit history."""

    async def list_patient_ids(self, cohort_filter: CohortFilter | None = None) -> list[str]:
        ...

    async def get_snapshot(self, patient_id: str, *, as_of: date | None = None) -> ClinicalSnapshot:
        ...

    async def get_cohort_snapshots(
        self, cohort_filter: CohortFilter | None = None, *, as_of: date | None = None
    ) -> list[ClinicalSnapshot]:
        ...

    async def get_visits(self, start: date, end: date) -> list[VisitRecord]:
        ...


class InMemoryClinicalGateway:
    """Gateway over a fixed set of ``PatientRecords``."""

    def __init__(
        self,
        records: Iterable[PatientRecords],
        *,
        today: Callable[[], date] | None = None,
        recent_window_days: int = 90,
    ) -> None:
        self._records = {item.patient_id: item for item in records}
        self._today = today or date.today
        self._recent_window_days = recent_window_days

    async def list_patient_ids(self, cohort_filter: CohortFilter | None = None) -> list[str]:
        if cohort_filter is None:
            return sorted(self._records)
        snapshots = await self.get_cohort_snapshots(cohort_filter)
        return [snapshot.patient_id for snapshot in snapshots]

    async def get_snapshot(self, patient_id: str, *, as_of: date | None = None) -> ClinicalSnapshot:
        records = self._records.get(patient_id)
        if records is None:
            raise DataUnavailableError(patient_id, "unknown patient")
        return build_snapshot(records, as_of or self._today(), recent_window_days=self._recent_window_days)

    async def get_cohort_snapshots(
        self, cohort_filter: CohortFilter | None = None, *, as_of: date | None = None
    ) -> list[ClinicalSnapshot]:
        snapshots = [await self.get_snapshot(patient_id, as_of=as_of) for patient_id in sorted(self._records)]
        if cohort_filter is None:
            return snapshots
        return [snapshot for snapshot in snapshots if cohort_filter.matches(snapshot)]

    async def get_visits(self, start: date, end: date) -> list[VisitRecord]:
        return [
            visit
            for records in self._records.values()
            for visit in records.visits
            if start <= visit.visit_date <= end
        ]

    def __len__(self) -> int:
        return len(self._records)


def _parse_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _required_date(value: Any) -> date:
    parsed = _parse_date(value)
    if parsed is None:
        raise ValueError("missing date")
    return parsed


def records_from_dict(data: Mapping[str, Any]) -> PatientRecords:
    """Convert one patient JSON document into ``PatientRecords``."""

    patient_id = str(data.get("patient_id") or data.get("id") or "")
    if not patient_id:
        raise DataUnavailableError(None, "patient document without patient_id")
    try:
        profile = PatientProfile(
            patient_id=patient_id,
            date_of_birth=_parse_date(data.get("date_of_birth")),
            blood_type=data.get("blood_type"),
            gender=data.get("gender"),
        )
        visits = tuple(
            VisitRecord(
                patient_id=patient_id,
                visit_date=_required_date(item["visit_date"]),
                symptoms=item.get("symptoms") or "",
                diagnosis=item.get("diagnosis") or "",
                visit_type=item.get("visit_type") or "CONSULTATION",
            )
            for item in data.get("visits", [])
        )
        allergies = tuple(
            AllergyRecord(
                patient_id=patient_id,
                allergen=item["allergen"],
                severity=AllergySeverity(str(item.get("severity", "MILD")).upper()),
                diagnosed_date=_parse_date(item.get("diagnosed_date")),
                is_active=bool(item.get("is_active", True)),
            )
            for item in data.get("allergies", [])
        )
        vaccinations = tuple(
            VaccinationRecord(
                patient_id=patient_id,
                vaccine_name=item["vaccine_name"],
                administered_on=_required_date(item["administered_on"]),
            )
            for item in data.get("vaccinations", [])
        )
        lab_results = tuple(
            LabResult(
                patient_id=patient_id,
                test_name=item["test_name"],
                value=float(item.get("value", 0.0)),
                status=LabStatus(str(item.get("status", "NORMAL")).upper()),
                test_date=_required_date(item["test_date"]),
            )
            for item in data.get("lab_results", [])
        )
        diagnoses = tuple(
            DiagnosisRecord(
                patient_id=patient_id,
                code=item.get("code", ""),
                name=item.get("name", ""),
                diagnosed_date=_required_date(item["diagnosed_date"]),
                category=item.get("category"),
                is_active=bool(item.get("is_active", True)),
                resolved_date=_parse_date(item.get("resolved_date")),
            )
            for item in data.get("diagnoses", [])
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise DataUnavailableError(patient_id, f"malformed record: {exc}") from exc

    return PatientRecords(
        profile=profile,
        visits=visits,
        allergies=allergies,
        vaccinations=vaccinations,
        lab_results=lab_results,
        diagnoses=diagnoses,
    )


def load_patient_records(path: Path) -> list[PatientRecords]:
    """Load patients from a JSON file (a list of documents) or a directory of ``<id>.json`` files."""

    if path.is_dir():
        documents: list[Any] = []
        for file_path in sorted(path.glob("*.json")):
            with file_path.open() as handle:
                payload = json.load(handle)
            payload.setdefault("patient_id", file_path.stem)
            documents.append(payload)
    else:
        with path.open() as handle:
            payload = json.load(handle)
        documents = payload if isinstance(payload, list) else payload.get("patients", [])
    return [records_from_dict(document) for document in documents]


__all__ = [
    "ClinicalDataGateway",
    "InMemoryClinicalGateway",
    "load_patient_records",
    "records_from_dict",
]
