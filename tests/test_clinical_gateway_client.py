from datetime import date
import json

import httpx
import pytest
import respx

from api_clients import clinical_backend_client
from api_clients.clinical_backend_client import ClinicalBackendClient
from api_clients.clinical_gateway_client import (
    HttpClinicalGateway,
    convert_clinical_record,
    convert_cohort_filter,
)
from clinical_patterns.errors import DataUnavailableError
from clinical_patterns.models import AllergySeverity, CohortFilter, LabStatus
from models.clinical_models import PatientClinicalRecordResponse

BASE_URL = "http://backend.test"
TODAY = date(2024, 6, 30)


def _record_payload(patient_id="p1"):
    return {
        "patient": {"id": patient_id, "dateOfBirth": "1980-06-30", "bloodType": "A+", "gender": "F"},
        "visits": [
            {"visitDate": "2024-06-29", "symptoms": "cough", "visitType": "emergency"},
            {"visitDate": "2024-06-20T10:00:00Z"},
            {"visitDate": "not-a-date"},
        ],
        "allergies": [{"allergenName": "Peanuts", "severity": "SEVERE", "diagnosedDate": "2019-01-01"}],
        "vaccinations": [{"vaccineName": "Influenza", "dateAdministered": "2023-10-01"}],
        "labResults": [
            {"testName": "HbA1c", "value": 8.2, "status": "HIGH", "testDate": "2024-06-01"},
            {"testName": "CBC", "testDate": "2024-06-01"},
        ],
        "diagnoses": [
            {"icdCode": "J45", "name": "Asthma", "category": "Respiratory", "diagnosedDate": "2022-02-02"}
        ],
    }


def _gateway():
    return HttpClinicalGateway(ClinicalBackendClient(BASE_URL, "token"), today=lambda: TODAY)


def test_client_requires_configuration(monkeypatch):
    monkeypatch.setattr(clinical_backend_client, "CLINICAL_BACKEND_API_BASE_URL", None)
    monkeypatch.setattr(clinical_backend_client, "CLINICAL_BACKEND_SESSION_TOKEN", None)

    with pytest.raises(ValueError):
        ClinicalBackendClient()


def test_convert_clinical_record():
    records = convert_clinical_record(PatientClinicalRecordResponse(**_record_payload()))

    assert records.patient_id == "p1"
    assert [visit.visit_date for visit in records.visits] == [date(2024, 6, 29), date(2024, 6, 20)]
    assert records.visits[0].visit_type == "EMERGENCY"
    assert records.allergies[0].severity is AllergySeverity.SEVERE
    assert [lab.status for lab in records.lab_results] == [LabStatus.HIGH, LabStatus.NORMAL]
    assert records.diagnoses[0].code == "J45"


def test_convert_cohort_filter():
    request = convert_cohort_filter(CohortFilter(min_age=18, blood_types=frozenset({"O-", "A+"})))

    assert request.model_dump(exclude_none=True) == {"minAge": 18, "bloodTypes": ["A+", "O-"]}
    assert convert_cohort_filter(None).model_dump(exclude_none=True) == {}


@pytest.mark.asyncio
@respx.mock
async def test_list_patient_ids_posts_search_filter():
    route = respx.post(f"{BASE_URL}/patients/search").mock(
        return_value=httpx.Response(200, json={"code": 200, "data": {"patientIds": ["p1", "p2"], "totalCount": 2}})
    )

    patient_ids = await _gateway().list_patient_ids(CohortFilter(min_age=18))

    assert patient_ids == ["p1", "p2"]
    assert json.loads(route.calls.last.request.content) == {"minAge": 18}
    assert route.calls.last.request.headers["x-session-token"] == "token"


@pytest.mark.asyncio
@respx.mock
async def test_get_snapshot_builds_from_clinical_record():
    respx.get(f"{BASE_URL}/patients/p1/clinical-record").mock(
        return_value=httpx.Response(200, json=_record_payload())
    )

    snapshot = await _gateway().get_snapshot("p1")

    assert snapshot.as_of == TODAY
    assert snapshot.age == 44
    assert snapshot.visit_count == 2
    assert snapshot.severe_allergy_count == 1
    assert snapshot.lab_abnormal_ratio == 0.5
    assert snapshot.diagnosis_categories == frozenset({"Respiratory"})


@pytest.mark.asyncio
@respx.mock
async def test_http_errors_become_data_unavailable():
    respx.get(f"{BASE_URL}/patients/p1/clinical-record").mock(return_value=httpx.Response(500, text="boom"))

    with pytest.raises(DataUnavailableError) as excinfo:
        await _gateway().get_snapshot("p1")

    assert excinfo.value.patient_id == "p1"


@pytest.mark.asyncio
@respx.mock
async def test_error_envelope_becomes_data_unavailable():
    respx.get(f"{BASE_URL}/patients/p1/clinical-record").mock(
        return_value=httpx.Response(200, json={"code": 404, "msg": "not found", "data": None})
    )

    with pytest.raises(DataUnavailableError):
        await _gateway().get_snapshot("p1")


@pytest.mark.asyncio
@respx.mock
async def test_invalid_payload_becomes_data_unavailable():
    respx.get(f"{BASE_URL}/patients/p1/clinical-record").mock(
        return_value=httpx.Response(200, json={"patient": {"dateOfBirth": "1980-01-01"}})
    )

    with pytest.raises(DataUnavailableError):
        await _gateway().get_snapshot("p1")


@pytest.mark.asyncio
@respx.mock
async def test_cohort_snapshots_skip_unavailable_patients():
    respx.post(f"{BASE_URL}/patients/search").mock(
        return_value=httpx.Response(200, json={"patientIds": ["p1", "p2"]})
    )
    respx.get(f"{BASE_URL}/patients/p1/clinical-record").mock(
        return_value=httpx.Response(200, json=_record_payload())
    )
    respx.get(f"{BASE_URL}/patients/p2/clinical-record").mock(return_value=httpx.Response(503))

    snapshots = await _gateway().get_cohort_snapshots()

    assert [snapshot.patient_id for snapshot in snapshots] == ["p1"]


@pytest.mark.asyncio
@respx.mock
async def test_get_visits_keeps_only_the_requested_range():
    route = respx.post(f"{BASE_URL}/visits/search").mock(
        return_value=httpx.Response(
            200,
            json={
                "visits": [
                    {"patientId": "p1", "visitDate": "2024-06-01", "symptoms": "fever"},
                    {"patientId": "p2", "visitDate": "2024-05-31"},
                    {"patientId": "p3", "visitDate": "garbage"},
                ]
            },
        )
    )

    visits = await _gateway().get_visits(date(2024, 6, 1), date(2024, 6, 30))

    assert [(visit.patient_id, visit.symptoms) for visit in visits] == [("p1", "fever")]
    assert json.loads(route.calls.last.request.content) == {"startDate": "2024-06-01", "endDate": "2024-06-30"}
