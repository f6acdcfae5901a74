"""
Clinical backend API models.
"""
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict


class AllergySeverityEnum(str, Enum):
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    LIFE_THREATENING = "LIFE_THREATENING"


class LabStatusEnum(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    LOW = "LOW"
    CRITICAL = "CRITICAL"


class ClinicalPatient(BaseModel):
    """
    Model for a patient profile.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(description="Patient ID")
    dateOfBirth: Optional[str] = Field(default=None, description="Date of birth (ISO date)")
    bloodType: Optional[str] = Field(default=None, description="Blood type, e.g. A+")
    gender: Optional[str] = Field(default=None, description="Gender")


class ClinicalVisit(BaseModel):
    """
    Model for a visit record.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientId: Optional[str] = Field(default=None, description="Patient ID")
    visitDate: str = Field(description="Visit date (ISO date or datetime)")
    symptoms: Optional[str] = Field(default=None, description="Reported symptoms")
    diagnosis: Optional[str] = Field(default=None, description="Diagnosis text")
    visitType: Optional[str] = Field(default=None, description="Visit type, e.g. CONSULTATION")


class ClinicalAllergy(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientId: Optional[str] = Field(default=None, description="Patient ID")
    allergenName: str = Field(description="Allergen name")
    severity: Optional[AllergySeverityEnum] = Field(default=None, description="Severity")
    diagnosedDate: Optional[str] = Field(default=None, description="Diagnosed date")
    isActive: bool = Field(default=True, description="False once the allergy is resolved")


class ClinicalVaccination(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientId: Optional[str] = Field(default=None, description="Patient ID")
    vaccineName: str = Field(description="Vaccine name")
    dateAdministered: str = Field(description="Administration date")


class ClinicalLabResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientId: Optional[str] = Field(default=None, description="Patient ID")
    testName: str = Field(description="Lab test name")
    value: Optional[float] = Field(default=None, description="Measured value")
    status: Optional[LabStatusEnum] = Field(default=None, description="Result status")
    testDate: str = Field(description="Test date")


class ClinicalDiagnosis(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientId: Optional[str] = Field(default=None, description="Patient ID")
    icdCode: Optional[str] = Field(default=None, description="ICD-10 code")
    name: Optional[str] = Field(default=None, description="Diagnosis name")
    category: Optional[str] = Field(default=None, description="Diagnosis category")
    diagnosedDate: str = Field(description="Diagnosed date")
    isActive: bool = Field(default=True, description="Active diagnosis")
    resolvedDate: Optional[str] = Field(default=None, description="Resolved date")


class PatientClinicalRecordResponse(BaseModel):
    """
    Model for the full clinical record of one patient.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patient: ClinicalPatient = Field(description="Patient profile")
    visits: Optional[List[ClinicalVisit]] = Field(default=None, description="Visit records")
    allergies: Optional[List[ClinicalAllergy]] = Field(default=None, description="Allergies")
    vaccinations: Optional[List[ClinicalVaccination]] = Field(default=None, description="Vaccinations")
    labResults: Optional[List[ClinicalLabResult]] = Field(default=None, description="Lab results")
    diagnoses: Optional[List[ClinicalDiagnosis]] = Field(default=None, description="Diagnoses")


class PatientSearchRequest(BaseModel):
    """
    Model for a patient search request.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientIds: Optional[List[str]] = Field(default=None, description="Restrict to these patient IDs")
    minAge: Optional[int] = Field(default=None, description="Minimum age")
    maxAge: Optional[int] = Field(default=None, description="Maximum age")
    bloodTypes: Optional[List[str]] = Field(default=None, description="Restrict to these blood types")


class PatientSearchResponse(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    patientIds: List[str] = Field(default_factory=list, description="Matching patient IDs")
    totalCount: Optional[int] = Field(default=None, description="Total number of matches")


class VisitSearchRequest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    startDate: str = Field(description="Inclusive start date")
    endDate: str = Field(description="Inclusive end date")


class VisitSearchResponse(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    visits: List[ClinicalVisit] = Field(default_factory=list, description="Visits in the range")
