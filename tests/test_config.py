import pytest

from clinical_patterns.config import (
    AlertThresholds,
    EngineSettings,
    RiskBands,
    RiskWeights,
    SignalScales,
)
from clinical_patterns.errors import ConfigurationError


def test_defaults_are_valid():
    settings = EngineSettings().validate()

    assert settings.risk_weights.as_dict() == {
        "recent_visits": 0.25,
        "active_allergies": 0.20,
        "active_diagnoses": 0.25,
        "lab_abnormality": 0.20,
        "vaccination_gap": 0.10,
    }
    assert settings.alert_thresholds == AlertThresholds(medium=0.5, high=0.75, critical=0.9)
    assert settings.report_interval_seconds is None


@pytest.mark.parametrize(
    "settings",
    [
        EngineSettings(risk_weights=RiskWeights(recent_visits=0.5)),
        EngineSettings(risk_weights=RiskWeights(recent_visits=-0.05, active_diagnoses=0.55)),
        EngineSettings(signal_scales=SignalScales(recent_visits=0)),
        EngineSettings(risk_bands=RiskBands(medium=0.6, high=0.6)),
        EngineSettings(alert_thresholds=AlertThresholds(high=0.95)),
        EngineSettings(notable_signal_threshold=1.2),
        EngineSettings(default_minimum_cases=0),
        EngineSettings(run_timeout_seconds=0),
        EngineSettings(initial_delay_seconds=-1),
        EngineSettings(report_interval_seconds=0),
    ],
)
def test_invalid_settings_raise(settings):
    with pytest.raises(ConfigurationError):
        settings.validate()


def test_from_env_reads_prefixed_overrides():
    environ = {
        "CLINICAL_PATTERNS_RISK_WEIGHT_RECENT_VISITS": "0.30",
        "CLINICAL_PATTERNS_RISK_WEIGHT_VACCINATION_GAP": "0.05",
        "CLINICAL_PATTERNS_RISK_BAND_HIGH": "0.65",
        "CLINICAL_PATTERNS_MAX_CONCURRENCY": "4",
        "CLINICAL_PATTERNS_REPORT_INTERVAL_SECONDS": "3600",
        "CLINICAL_PATTERNS_SOMETHING_ELSE": "ignored",
        "UNRELATED": "1",
    }

    settings = EngineSettings.from_env(environ)

    assert settings.risk_weights.recent_visits == 0.30
    assert settings.risk_weights.vaccination_gap == 0.05
    assert settings.risk_bands.high == 0.65
    assert settings.risk_bands.medium == 0.3
    assert settings.max_concurrency == 4
    assert settings.report_interval_seconds == 3600.0
    settings.validate()


def test_from_env_can_disable_population_reports():
    settings = EngineSettings.from_env({"CLINICAL_PATTERNS_REPORT_INTERVAL_SECONDS": "off"})

    assert settings.report_interval_seconds is None


@pytest.mark.parametrize(
    "environ",
    [
        {"CLINICAL_PATTERNS_MAX_CONCURRENCY": "four"},
        {"CLINICAL_PATTERNS_RISK_BAND_HIGH": "high"},
        {"CLINICAL_PATTERNS_RISK_WEIGHT_SHOE_SIZE": "0.1"},
    ],
)
def test_from_env_rejects_bad_values(environ):
    with pytest.raises(ConfigurationError):
        EngineSettings.from_env(environ)


def test_from_mapping_builds_nested_groups():
    settings = EngineSettings.from_mapping(
        {
            "risk_bands": {"medium": 0.2, "high": 0.5, "critical": 0.7},
            "seasonal_deviation_percent": 20,
        }
    )

    assert settings.risk_bands == RiskBands(medium=0.2, high=0.5, critical=0.7)
    assert settings.seasonal_deviation_percent == 20
    assert settings.risk_weights == RiskWeights()


@pytest.mark.parametrize(
    "data",
    [
        {"colour": "blue"},
        {"risk_bands": 0.5},
        {"risk_bands": {"extreme": 0.99}},
        {"risk_weights": {"recent_visits": "lots"}},
    ],
)
def test_from_mapping_rejects_unknown_or_bad_entries(data):
    with pytest.raises(ConfigurationError):
        EngineSettings.from_mapping(data)
