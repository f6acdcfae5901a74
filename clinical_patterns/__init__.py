"""Population-level clinical pattern detection and risk alerting."""

from .alerts import AlertGenerator, InMemoryAlertStore, InMemoryMatchStore
from .catalog import PatternCatalog, pattern_from_dict, pattern_to_dict
from .conditions import And, Comparison, Not, Or, SetMembership, WindowedCount, parse_condition
from .config import EngineSettings
from .engine import DetectionEngine
from .errors import (
    AlertNotFoundError,
    ClinicalPatternsError,
    ConfigurationError,
    DataUnavailableError,
    DedupConflictError,
    MalformedPatternError,
    RunInProgressError,
)
from .gateway import ClinicalDataGateway, InMemoryClinicalGateway
from .models import (
    ClinicalSnapshot,
    CohortFilter,
    DetectionRunReport,
    MedicalAlert,
    MedicalPattern,
    PatternMatch,
    PatternStatus,
    RiskAssessment,
    RiskLevel,
    RunState,
    Severity,
)
from .pattern_library import default_catalog
from .scheduler import DetectionScheduler

__all__ = [
    "AlertGenerator",
    "AlertNotFoundError",
    "And",
    "ClinicalDataGateway",
    "ClinicalPatternsError",
    "ClinicalSnapshot",
    "CohortFilter",
    "Comparison",
    "ConfigurationError",
    "DataUnavailableError",
    "DedupConflictError",
    "DetectionEngine",
    "DetectionRunReport",
    "DetectionScheduler",
    "EngineSettings",
    "InMemoryAlertStore",
    "InMemoryClinicalGateway",
    "InMemoryMatchStore",
    "MalformedPatternError",
    "MedicalAlert",
    "MedicalPattern",
    "Not",
    "Or",
    "PatternCatalog",
    "PatternMatch",
    "PatternStatus",
    "RiskAssessment",
    "RiskLevel",
    "RunInProgressError",
    "RunState",
    "SetMembership",
    "Severity",
    "WindowedCount",
    "default_catalog",
    "parse_condition",
    "pattern_from_dict",
    "pattern_to_dict",
]
