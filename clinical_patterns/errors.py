"""Error taxonomy for the detection engine."""
from __future__ import annotations


class ClinicalPatternsError(Exception):
    """Base class for engine errors."""


class DataUnavailableError(ClinicalPatternsError, RuntimeError):
    """The clinical data gateway could not provide data for a patient."""

    def __init__(self, patient_id: str | None, reason: str) -> None:
        self.patient_id = patient_id
        self.reason = reason
        subject = f"patient {patient_id}" if patient_id else "cohort query"
        super().__init__(f"Clinical data unavailable for {subject}: {reason}")


class MalformedPatternError(ClinicalPatternsError, ValueError):
    """A pattern condition cannot be parsed or evaluated."""

    def __init__(self, message: str, *, pattern_id: str | None = None) -> None:
        self.pattern_id = pattern_id
        prefix = f"Pattern '{pattern_id}': " if pattern_id else ""
        super().__init__(f"{prefix}{message}")


class DedupConflictError(ClinicalPatternsError, RuntimeError):
    """Two unread alerts were about to exist for the same (patient, type) key."""

    def __init__(self, patient_id: str, alert_type: str, existing_alert_id: str) -> None:
        self.patient_id = patient_id
        self.alert_type = alert_type
        self.existing_alert_id = existing_alert_id
        super().__init__(
            f"Unread alert {existing_alert_id} already open for patient {patient_id} ({alert_type})"
        )


class ConfigurationError(ClinicalPatternsError, ValueError):
    """Engine settings are inconsistent; the engine refuses to run."""


class RunInProgressError(ClinicalPatternsError, RuntimeError):
    """A detection cycle was requested while another one is running."""


class AlertNotFoundError(ClinicalPatternsError, LookupError):
    """No alert exists with the requested id."""


__all__ = [
    "AlertNotFoundError",
    "ClinicalPatternsError",
    "ConfigurationError",
    "DataUnavailableError",
    "DedupConflictError",
    "MalformedPatternError",
    "RunInProgressError",
]
