"""Core data models for clinical pattern detection."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from .conditions import Condition


class Severity(str, Enum):
    """Alert urgency, ordered from LOW to CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PatternStatus(str, Enum):
    """Outcome of evaluating one pattern over a cohort."""

    DETECTED = "detected"
    NOT_DETECTED = "not_detected"
    INSUFFICIENT_DATA = "insufficient_data"
    FAILED = "failed"


class RunState(str, Enum):
    IDLE = "IDLE"
    LOADING_SNAPSHOT = "LOADING_SNAPSHOT"
    MATCHING = "MATCHING"
    SCORING = "SCORING"
    ALERTING = "ALERTING"


class AllergySeverity(str, Enum):
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    LIFE_THREATENING = "LIFE_THREATENING"

    @property
    def is_severe(self) -> bool:
        return self in (AllergySeverity.SEVERE, AllergySeverity.LIFE_THREATENING)


class LabStatus(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    LOW = "LOW"
    CRITICAL = "CRITICAL"

    @property
    def is_abnormal(self) -> bool:
        return self is not LabStatus.NORMAL


class FactType(str, Enum):
    """Kinds of dated clinical facts usable in windowed-count conditions."""

    VISIT = "visit"
    ALLERGY = "allergy"
    VACCINATION = "vaccination"
    LAB_ABNORMAL = "lab_abnormal"
    DIAGNOSIS = "diagnosis"


class Significance(str, Enum):
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    NONE = "NONE"
    WEAK = "WEAK"
    MODERATE = "MODERATE"
    STRONG = "STRONG"


class TrendType(str, Enum):
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class AlertOutcome(str, Enum):
    """What the alert generator did with a detection."""

    CREATED = "created"
    REFRESHED = "refreshed"
    SUPPRESSED = "suppressed"


# --- raw clinical records ---------------------------------------------------


@dataclass(frozen=True)
class PatientProfile:
    patient_id: str
    date_of_birth: Optional[date] = None
    blood_type: Optional[str] = None
    gender: Optional[str] = None


@dataclass(frozen=True)
class VisitRecord:
    patient_id: str
    visit_date: date
    symptoms: str = ""
    diagnosis: str = ""
    visit_type: str = "CONSULTATION"


@dataclass(frozen=True)
class AllergyRecord:
    patient_id: str
    allergen: str
    severity: AllergySeverity
    diagnosed_date: Optional[date] = None
    is_active: bool = True


@dataclass(frozen=True)
class VaccinationRecord:
    patient_id: str
    vaccine_name: str
    administered_on: date


@dataclass(frozen=True)
class LabResult:
    patient_id: str
    test_name: str
    value: float
    status: LabStatus
    test_date: date


@dataclass(frozen=True)
class DiagnosisRecord:
    patient_id: str
    code: str
    name: str
    diagnosed_date: date
    category: Optional[str] = None
    is_active: bool = True
    resolved_date: Optional[date] = None


@dataclass(frozen=True)
class PatientRecords:
    """Everything the gateway knows about one patient."""

    profile: PatientProfile
    visits: Sequence[VisitRecord] = field(default_factory=tuple)
    allergies: Sequence[AllergyRecord] = field(default_factory=tuple)
    vaccinations: Sequence[VaccinationRecord] = field(default_factory=tuple)
    lab_results: Sequence[LabResult] = field(default_factory=tuple)
    diagnoses: Sequence[DiagnosisRecord] = field(default_factory=tuple)

    @property
    def patient_id(self) -> str:
        return self.profile.patient_id


# --- snapshot ----------------------------------------------------------------


@dataclass(frozen=True)
class ClinicalEvent:
    """A dated fact kept on the snapshot for time-windowed conditions."""

    fact_type: FactType
    occurred_on: date
    category: Optional[str] = None


@dataclass(frozen=True)
class ClinicalSnapshot:
    """Point-in-time aggregate of one patient's clinical facts."""

    patient_id: str
    as_of: date
    age: Optional[int] = None
    blood_type: Optional[str] = None
    gender: Optional[str] = None
    visit_count: int = 0
    recent_visit_count: int = 0
    last_visit_date: Optional[date] = None
    allergy_count: int = 0
    severe_allergy_count: int = 0
    allergy_severities: frozenset[str] = frozenset()
    allergens: frozenset[str] = frozenset()
    vaccination_count: int = 0
    last_vaccination_date: Optional[date] = None
    diagnosis_count: int = 0
    active_diagnosis_count: int = 0
    diagnosis_categories: frozenset[str] = frozenset()
    lab_result_count: int = 0
    lab_abnormal_count: int = 0
    lab_abnormal_ratio: float = 0.0
    events: Sequence[ClinicalEvent] = field(default_factory=tuple, repr=False)

    @property
    def days_since_last_vaccination(self) -> Optional[int]:
        if self.last_vaccination_date is None:
            return None
        return max(0, (self.as_of - self.last_vaccination_date).days)

    def count_events(
        self,
        fact_type: FactType,
        within_days: int,
        categories: Iterable[str] | None = None,
    ) -> int:
        """Count events of one type dated within the last ``within_days``."""

        allowed = {c.lower() for c in categories} if categories else None
        earliest = self.as_of.toordinal() - within_days
        latest = self.as_of.toordinal()
        total = 0
        for event in self.events:
            if event.fact_type is not fact_type:
                continue
            ordinal = event.occurred_on.toordinal()
            if ordinal < earliest or ordinal > latest:
                continue
            if allowed is not None and (event.category or "").lower() not in allowed:
                continue
            total += 1
        return total


@dataclass(frozen=True)
class CohortFilter:
    """Restricts a cohort by id, age range or blood type."""

    patient_ids: Optional[frozenset[str]] = None
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    blood_types: Optional[frozenset[str]] = None

    def matches(self, snapshot: ClinicalSnapshot) -> bool:
        if self.patient_ids is not None and snapshot.patient_id not in self.patient_ids:
            return False
        if self.min_age is not None and (snapshot.age is None or snapshot.age < self.min_age):
            return False
        if self.max_age is not None and (snapshot.age is None or snapshot.age > self.max_age):
            return False
        if self.blood_types is not None:
            wanted = {b.upper() for b in self.blood_types}
            if (snapshot.blood_type or "").upper() not in wanted:
                return False
        return True


# --- patterns, matches and alerts ---------------------------------------------


@dataclass(frozen=True)
class MedicalPattern:
    """Declarative trigger/outcome rule evaluated over a cohort."""

    pattern_id: str
    name: str
    trigger: "Condition"
    outcome: "Condition"
    description: str = ""
    minimum_cases: int = 10
    confidence_threshold: float = 0.7
    is_active: bool = True
    recommended_actions: Sequence[str] = field(default_factory=tuple)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


@dataclass(frozen=True)
class PatternMatch:
    """One patient for whom an active pattern fired."""

    match_id: str
    pattern_id: str
    pattern_name: str
    patient_id: str
    confidence_score: float
    detected_at: datetime
    matching_data: Mapping[str, Any] = field(default_factory=dict)
    is_notified: bool = False
    notified_at: Optional[datetime] = None


@dataclass(frozen=True)
class PatternEvaluation:
    """Standardized output for a single pattern over one cohort."""

    pattern_id: str
    status: PatternStatus
    trigger_count: int = 0
    outcome_count: int = 0
    confidence: Optional[float] = None
    matches: Sequence[PatternMatch] = field(default_factory=tuple)
    diagnostic: Optional[str] = None


@dataclass(frozen=True)
class MedicalAlert:
    """Actionable alert; at most one unread alert exists per (patient, type)."""

    alert_id: str
    patient_id: str
    alert_type: str
    severity: Severity
    message: str
    confidence_score: float
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    recommended_actions: Sequence[str] = field(default_factory=tuple)
    pattern_match_id: Optional[str] = None
    patient_count: int = 1
    is_read: bool = False
    read_at: Optional[datetime] = None
    read_by: Optional[str] = None
    is_notified: bool = False
    notified_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.patient_id, self.alert_type)


# --- analysis results ----------------------------------------------------------


@dataclass(frozen=True)
class RiskAssessment:
    patient_id: str
    risk_score: float
    risk_level: RiskLevel
    risk_factors: Sequence[str] = field(default_factory=tuple)
    signals: Mapping[str, float] = field(default_factory=dict)
    contributions: Mapping[str, float] = field(default_factory=dict)
    as_of: Optional[date] = None


@dataclass(frozen=True)
class CorrelationResult:
    factor_a: str
    factor_b: str
    correlation: Optional[float]
    significance: Significance
    sample_size: int
    method: str
    insight: str = ""

    @property
    def insufficient_data(self) -> bool:
        return self.significance is Significance.INSUFFICIENT_DATA


@dataclass(frozen=True)
class SeasonalTrend:
    month: int
    month_name: str
    season: str
    visit_count: int
    days_observed: int
    average_visits_per_day: float
    percentage_deviation: float
    trend_type: TrendType
    respiratory_issues: int = 0
    allergic_reactions: int = 0

    @property
    def percentage_of_average(self) -> float:
        return 100.0 + self.percentage_deviation


@dataclass(frozen=True)
class CohortBreakdown:
    """Aggregates for one blood type or age group."""

    group: str
    count: int
    average_age: Optional[float]
    average_visits: float
    average_allergies: float
    average_lab_abnormal_ratio: float
    high_risk_count: int
    risk_percentage: float


@dataclass(frozen=True)
class PatientAnalytics:
    patient_id: str
    risk: RiskAssessment
    total_visits: int
    recent_visits: int
    last_visit: Optional[date]
    allergy_count: int
    vaccination_count: int
    diagnosis_count: int
    lab_result_count: int
    predicted_next_year_visits: int
    health_trend_score: float
    recommended_actions: Sequence[str] = field(default_factory=tuple)
    open_alerts: Sequence[MedicalAlert] = field(default_factory=tuple)


@dataclass(frozen=True)
class DetectionRunReport:
    """Summary of one pipeline run."""

    run_id: str
    started_at: datetime
    finished_at: datetime
    cohort_size: int
    processed_patients: Sequence[str] = field(default_factory=tuple)
    skipped_patients: Mapping[str, str] = field(default_factory=dict)
    deferred_patients: Sequence[str] = field(default_factory=tuple)
    evaluations: Sequence[PatternEvaluation] = field(default_factory=tuple)
    matches: Sequence[PatternMatch] = field(default_factory=tuple)
    risk_assessments: Sequence[RiskAssessment] = field(default_factory=tuple)
    alerts_created: int = 0
    alerts_refreshed: int = 0
    alerts_suppressed: int = 0
    timed_out: bool = False

    @property
    def failed_patterns(self) -> dict[str, str]:
        return {
            evaluation.pattern_id: evaluation.diagnostic or ""
            for evaluation in self.evaluations
            if evaluation.status is PatternStatus.FAILED
        }

    @property
    def high_risk_patients(self) -> list[str]:
        return [
            assessment.patient_id
            for assessment in self.risk_assessments
            if assessment.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        ]


@dataclass(frozen=True)
class PopulationReport:
    """Periodic population overview: standard correlations and seasonal trends."""

    generated_at: datetime
    start: date
    end: date
    correlations: Sequence[CorrelationResult] = field(default_factory=tuple)
    seasonal_trends: Sequence[SeasonalTrend] = field(default_factory=tuple)
    blood_type_breakdown: Sequence[CohortBreakdown] = field(default_factory=tuple)
    age_group_breakdown: Sequence[CohortBreakdown] = field(default_factory=tuple)
