"""Tunable settings for the detection engine.

Every numeric default used by scoring, alerting and scheduling lives here so a
deployment can override it through ``CLINICAL_PATTERNS_*`` environment
variables or a JSON settings file without touching engine code.
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

from .errors import ConfigurationError

ENV_PREFIX = "CLINICAL_PATTERNS_"

SIGNAL_NAMES: tuple[str, ...] = (
    "recent_visits",
    "active_allergies",
    "active_diagnoses",
    "lab_abnormality",
    "vaccination_gap",
)


@dataclass(frozen=True)
class RiskWeights:
    """Per-signal weights for the risk score; must sum to 1.0."""

    recent_visits: float = 0.25
    active_allergies: float = 0.20
    active_diagnoses: float = 0.25
    lab_abnormality: float = 0.20
    vaccination_gap: float = 0.10

    def as_dict(self) -> dict[str, float]:
        return {name: float(getattr(self, name)) for name in SIGNAL_NAMES}

    def validate(self) -> None:
        weights = self.as_dict()
        negative = [name for name, value in weights.items() if value < 0 or math.isnan(value)]
        if negative:
            raise ConfigurationError(f"Risk weights must be non-negative: {', '.join(negative)}")
        total = sum(weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ConfigurationError(f"Risk weights must sum to 1.0 (got {total:.6f})")


@dataclass(frozen=True)
class SignalScales:
    """Saturation points used to normalize raw signals into [0, 1]."""

    recent_visits: float = 6.0
    active_allergies: float = 3.0
    active_diagnoses: float = 3.0
    lab_abnormality: float = 0.5
    vaccination_gap_days: float = 730.0

    def validate(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if not value > 0:
                raise ConfigurationError(f"Signal scale '{item.name}' must be positive (got {value})")


@dataclass(frozen=True)
class RiskBands:
    """Lower bounds of the MEDIUM, HIGH and CRITICAL risk levels."""

    medium: float = 0.3
    high: float = 0.6
    critical: float = 0.8

    def validate(self) -> None:
        _check_unit_interval("risk band", {"medium": self.medium, "high": self.high, "critical": self.critical})
        if not (self.medium < self.high < self.critical):
            raise ConfigurationError("Risk bands must be strictly increasing: medium < high < critical")


@dataclass(frozen=True)
class AlertThresholds:
    """Confidence cut-offs that map pattern confidence onto alert severity."""

    medium: float = 0.5
    high: float = 0.75
    critical: float = 0.9

    def validate(self) -> None:
        _check_unit_interval("alert threshold", {"medium": self.medium, "high": self.high, "critical": self.critical})
        if not (self.medium <= self.high <= self.critical):
            raise ConfigurationError("Alert thresholds must be ordered: medium <= high <= critical")


@dataclass(frozen=True)
class EngineSettings:
    """Complete engine configuration with the documented defaults."""

    risk_weights: RiskWeights = field(default_factory=RiskWeights)
    signal_scales: SignalScales = field(default_factory=SignalScales)
    risk_bands: RiskBands = field(default_factory=RiskBands)
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    notable_signal_threshold: float = 0.5
    recent_visit_window_days: int = 90
    default_minimum_cases: int = 10
    default_confidence_threshold: float = 0.7
    correlation_minimum_sample: int = 10
    seasonal_deviation_percent: float = 15.0
    max_concurrency: int = 16
    gateway_timeout_seconds: float = 10.0
    run_timeout_seconds: float = 900.0
    run_interval_seconds: float = 6 * 60 * 60
    initial_delay_seconds: float = 120.0
    retry_delay_seconds: float = 60 * 60
    report_interval_seconds: float | None = None

    def validate(self) -> "EngineSettings":
        """Raise ``ConfigurationError`` if any value is out of range."""

        self.risk_weights.validate()
        self.signal_scales.validate()
        self.risk_bands.validate()
        self.alert_thresholds.validate()
        _check_unit_interval(
            "threshold",
            {
                "notable_signal_threshold": self.notable_signal_threshold,
                "default_confidence_threshold": self.default_confidence_threshold,
            },
        )
        for name in (
            "recent_visit_window_days",
            "default_minimum_cases",
            "correlation_minimum_sample",
            "max_concurrency",
        ):
            value = getattr(self, name)
            if int(value) < 1:
                raise ConfigurationError(f"'{name}' must be >= 1 (got {value})")
        for name in (
            "seasonal_deviation_percent",
            "gateway_timeout_seconds",
            "run_timeout_seconds",
            "run_interval_seconds",
            "retry_delay_seconds",
        ):
            value = getattr(self, name)
            if not value > 0:
                raise ConfigurationError(f"'{name}' must be positive (got {value})")
        if self.initial_delay_seconds < 0:
            raise ConfigurationError("'initial_delay_seconds' must not be negative")
        if self.report_interval_seconds is not None and not self.report_interval_seconds > 0:
            raise ConfigurationError("'report_interval_seconds' must be positive when set")
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineSettings":
        """Build settings from a nested mapping such as a parsed JSON file."""

        nested = {
            "risk_weights": RiskWeights,
            "signal_scales": SignalScales,
            "risk_bands": RiskBands,
            "alert_thresholds": AlertThresholds,
        }
        known = {item.name for item in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in nested:
                if not isinstance(value, Mapping):
                    raise ConfigurationError(f"'{key}' must be a mapping")
                group_cls = nested[key]
                group_fields = {item.name for item in fields(group_cls)}
                bad = set(value) - group_fields
                if bad:
                    raise ConfigurationError(f"Unknown '{key}' entries: {', '.join(sorted(bad))}")
                kwargs[key] = group_cls(**{k: _as_float(f"{key}.{k}", v) for k, v in value.items()})
            else:
                kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        """Read overrides from ``CLINICAL_PATTERNS_*`` environment variables.

        Group members use the group prefix, e.g.
        ``CLINICAL_PATTERNS_RISK_WEIGHT_RECENT_VISITS=0.3`` or
        ``CLINICAL_PATTERNS_RISK_BAND_HIGH=0.65``.
        """

        env = os.environ if environ is None else environ
        settings = cls()
        groups = {
            "RISK_WEIGHT_": "risk_weights",
            "SIGNAL_SCALE_": "signal_scales",
            "RISK_BAND_": "risk_bands",
            "ALERT_THRESHOLD_": "alert_thresholds",
        }
        group_overrides: dict[str, dict[str, float]] = {name: {} for name in groups.values()}
        top_level: dict[str, Any] = {}
        scalar_fields = {item.name: item for item in fields(cls) if item.name not in group_overrides}

        for raw_key, raw_value in env.items():
            if not raw_key.startswith(ENV_PREFIX):
                continue
            key = raw_key[len(ENV_PREFIX):]
            for prefix, group in groups.items():
                if key.startswith(prefix):
                    member = key[len(prefix):].lower()
                    group_overrides[group][member] = _as_float(raw_key, raw_value)
                    break
            else:
                name = key.lower()
                if name not in scalar_fields:
                    continue
                top_level[name] = _coerce_scalar(raw_key, name, raw_value)

        for group, overrides in group_overrides.items():
            if not overrides:
                continue
            current = getattr(settings, group)
            valid = {item.name for item in fields(current)}
            bad = set(overrides) - valid
            if bad:
                raise ConfigurationError(f"Unknown {group} override(s): {', '.join(sorted(bad))}")
            top_level[group] = replace(current, **overrides)

        return replace(settings, **top_level)


_INT_FIELDS = {
    "recent_visit_window_days",
    "default_minimum_cases",
    "correlation_minimum_sample",
    "max_concurrency",
}


def _coerce_scalar(source: str, name: str, value: str) -> Any:
    if name == "report_interval_seconds" and value.strip().lower() in {"", "none", "off"}:
        return None
    if name in _INT_FIELDS:
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{source} must be an integer (got {value!r})") from None
    return _as_float(source, value)


def _as_float(source: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{source} must be numeric (got {value!r})") from None


def _check_unit_interval(label: str, values: Mapping[str, float]) -> None:
    for name, value in values.items():
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{label} '{name}' must be within [0, 1] (got {value})")


__all__ = [
    "AlertThresholds",
    "ENV_PREFIX",
    "EngineSettings",
    "RiskBands",
    "RiskWeights",
    "SIGNAL_NAMES",
    "SignalScales",
]
