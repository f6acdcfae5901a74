"""
Clinical data gateway backed by the clinical backend HTTP API.
"""
import asyncio
import logging
from datetime import date
from typing import Any, Callable, List, Optional

import httpx
from pydantic import ValidationError

from api_clients.clinical_backend_client import ClinicalBackendClient
from models.clinical_models import (
    ClinicalVisit,
    PatientClinicalRecordResponse,
    PatientSearchRequest,
    PatientSearchResponse,
    VisitSearchRequest,
    VisitSearchResponse,
)

from clinical_patterns.errors import DataUnavailableError
from clinical_patterns.features import build_snapshot
from clinical_patterns.models import (
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

PATIENT_SEARCH_ENDPOINT = "/patients/search"
PATIENT_RECORD_ENDPOINT = "/patients/{patient_id}/clinical-record"
VISIT_SEARCH_ENDPOINT = "/visits/search"


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _unwrap(data: Any, endpoint: str) -> dict:
    """Accept either a ``{"code": ..., "data": ...}`` envelope or a flat payload."""
    if not isinstance(data, dict):
        raise RuntimeError(f"Unexpected non-JSON response from {endpoint}: {data!r}")
    if "data" not in data:
        return data
    code = data.get("code")
    payload = data.get("data")
    if code not in (None, 0, 200) or payload is None:
        logging.error(f"Clinical backend call failed: code={code}, endpoint={endpoint}, body={data!r}")
        raise RuntimeError(f"Clinical backend API error (code={code})")
    return payload


def convert_visit(visit: ClinicalVisit, patient_id: Optional[str] = None) -> Optional[VisitRecord]:
    visit_date = _parse_date(visit.visitDate)
    if visit_date is None:
        return None
    return VisitRecord(
        patient_id=visit.patientId or patient_id or "",
        visit_date=visit_date,
        symptoms=visit.symptoms or "",
        diagnosis=visit.diagnosis or "",
        visit_type=(visit.visitType or "CONSULTATION").upper(),
    )


def convert_clinical_record(response: PatientClinicalRecordResponse) -> PatientRecords:
    patient = response.patient
    patient_id = patient.id

    visits = [convert_visit(visit, patient_id) for visit in response.visits or []]

    allergies: list[AllergyRecord] = []
    for allergy in response.allergies or []:
        allergies.append(
            AllergyRecord(
                patient_id=patient_id,
                allergen=allergy.allergenName,
                severity=AllergySeverity(allergy.severity.value) if allergy.severity else AllergySeverity.MILD,
                diagnosed_date=_parse_date(allergy.diagnosedDate),
                is_active=allergy.isActive,
            )
        )

    vaccinations: list[VaccinationRecord] = []
    for vaccination in response.vaccinations or []:
        administered_on = _parse_date(vaccination.dateAdministered)
        if administered_on is None:
            continue
        vaccinations.append(
            VaccinationRecord(patient_id=patient_id, vaccine_name=vaccination.vaccineName, administered_on=administered_on)
        )

    lab_results: list[LabResult] = []
    for lab in response.labResults or []:
        test_date = _parse_date(lab.testDate)
        if test_date is None:
            continue
        lab_results.append(
            LabResult(
                patient_id=patient_id,
                test_name=lab.testName,
                value=float(lab.value or 0.0),
                status=LabStatus(lab.status.value) if lab.status else LabStatus.NORMAL,
                test_date=test_date,
            )
        )

    diagnoses: list[DiagnosisRecord] = []
    for diagnosis in response.diagnoses or []:
        diagnosed_date = _parse_date(diagnosis.diagnosedDate)
        if diagnosed_date is None:
            continue
        diagnoses.append(
            DiagnosisRecord(
                patient_id=patient_id,
                code=diagnosis.icdCode or "",
                name=diagnosis.name or "",
                diagnosed_date=diagnosed_date,
                category=diagnosis.category,
                is_active=diagnosis.isActive,
                resolved_date=_parse_date(diagnosis.resolvedDate),
            )
        )

    return PatientRecords(
        profile=PatientProfile(
            patient_id=patient_id,
            date_of_birth=_parse_date(patient.dateOfBirth),
            blood_type=patient.bloodType,
            gender=patient.gender,
        ),
        visits=tuple(visit for visit in visits if visit is not None),
        allergies=tuple(allergies),
        vaccinations=tuple(vaccinations),
        lab_results=tuple(lab_results),
        diagnoses=tuple(diagnoses),
    )


def convert_cohort_filter(cohort_filter: Optional[CohortFilter]) -> PatientSearchRequest:
    if cohort_filter is None:
        return PatientSearchRequest()
    return PatientSearchRequest(
        patientIds=sorted(cohort_filter.patient_ids) if cohort_filter.patient_ids is not None else None,
        minAge=cohort_filter.min_age,
        maxAge=cohort_filter.max_age,
        bloodTypes=sorted(cohort_filter.blood_types) if cohort_filter.blood_types is not None else None,
    )


class HttpClinicalGateway:
    """
    ClinicalDataGateway implementation that reads from the clinical backend.
    Transport and payload failures surface as DataUnavailableError.
    """

    def __init__(
        self,
        client: Optional[ClinicalBackendClient] = None,
        *,
        today: Optional[Callable[[], date]] = None,
        recent_window_days: int = 90,
        max_concurrency: int = 8,
    ):
        self.client = client or ClinicalBackendClient()
        self._today = today or date.today
        self._recent_window_days = recent_window_days
        self._max_concurrency = max_concurrency

    async def list_patient_ids(self, cohort_filter: Optional[CohortFilter] = None) -> List[str]:
        request_data = convert_cohort_filter(cohort_filter)
        try:
            data = await self.client._make_request(
                method="POST",
                endpoint=PATIENT_SEARCH_ENDPOINT,
                json_data=request_data.model_dump(exclude_none=True),
            )
            response = PatientSearchResponse(**_unwrap(data, PATIENT_SEARCH_ENDPOINT))
        except (httpx.HTTPError, RuntimeError, ValidationError) as e:
            raise DataUnavailableError(None, str(e)) from e
        return list(response.patientIds)

    async def get_records(self, patient_id: str) -> PatientRecords:
        endpoint = PATIENT_RECORD_ENDPOINT.format(patient_id=patient_id)
        try:
            data = await self.client._make_request(method="GET", endpoint=endpoint)
            response = PatientClinicalRecordResponse(**_unwrap(data, endpoint))
        except (httpx.HTTPError, RuntimeError, ValidationError) as e:
            raise DataUnavailableError(patient_id, str(e)) from e
        return convert_clinical_record(response)

    async def get_snapshot(self, patient_id: str, *, as_of: Optional[date] = None) -> ClinicalSnapshot:
        records = await self.get_records(patient_id)
        return build_snapshot(records, as_of or self._today(), recent_window_days=self._recent_window_days)

    async def get_cohort_snapshots(
        self, cohort_filter: Optional[CohortFilter] = None, *, as_of: Optional[date] = None
    ) -> List[ClinicalSnapshot]:
        patient_ids = await self.list_patient_ids(cohort_filter)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def load(patient_id: str) -> Optional[ClinicalSnapshot]:
            async with semaphore:
                try:
                    return await self.get_snapshot(patient_id, as_of=as_of)
                except DataUnavailableError as e:
                    logging.warning(f"Skipping patient {patient_id} in cohort load: {e.reason}")
                    return None

        snapshots = await asyncio.gather(*(load(patient_id) for patient_id in patient_ids))
        loaded = [snapshot for snapshot in snapshots if snapshot is not None]
        if cohort_filter is None:
            return loaded
        return [snapshot for snapshot in loaded if cohort_filter.matches(snapshot)]

    async def get_visits(self, start: date, end: date) -> List[VisitRecord]:
        request_data = VisitSearchRequest(startDate=start.isoformat(), endDate=end.isoformat())
        try:
            data = await self.client._make_request(
                method="POST",
                endpoint=VISIT_SEARCH_ENDPOINT,
                json_data=request_data.model_dump(),
            )
            response = VisitSearchResponse(**_unwrap(data, VISIT_SEARCH_ENDPOINT))
        except (httpx.HTTPError, RuntimeError, ValidationError) as e:
            raise DataUnavailableError(None, str(e)) from e
        visits = [convert_visit(visit) for visit in response.visits]
        return [visit for visit in visits if visit is not None and start <= visit.visit_date <= end]
