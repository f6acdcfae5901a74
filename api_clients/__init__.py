"""API clients and helpers for external services."""

from .clinical_backend_client import ClinicalBackendClient
from .clinical_gateway_client import (
    HttpClinicalGateway,
    convert_clinical_record,
    convert_cohort_filter,
    convert_visit,
)

__all__ = [
    "ClinicalBackendClient",
    "HttpClinicalGateway",
    "convert_clinical_record",
    "convert_cohort_filter",
    "convert_visit",
]
