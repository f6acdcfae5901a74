"""Built-in pattern definitions.

These restate the population detectors of the legacy monitoring service
(visit frequency, vaccination gaps, allergy clusters, lab anomalies,
diagnosis trends) as declarative trigger/outcome patterns, plus one
correlational allergy → respiratory pattern.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from .catalog import PatternCatalog, pattern_from_dict

DEFAULT_PATTERN_DEFINITIONS: tuple[dict[str, Any], ...] = (
    {
        "id": "high_visit_frequency",
        "name": "High Visit Frequency Pattern",
        "description": "5+ visits in 6 months, followed by an active diagnosis",
        "trigger": {"type": "windowed_count", "fact": "visit", "within_days": 180, "min_count": 5},
        "outcome": {"type": "comparison", "field": "active_diagnosis_count", "op": ">=", "value": 1},
        "minimum_cases": 3,
        "confidence_threshold": 0.6,
        "recommended_actions": [
            "Investigate underlying health conditions",
            "Consider a comprehensive health assessment",
        ],
    },
    {
        "id": "adult_vaccination_gap",
        "name": "Vaccination Gap Pattern",
        "description": "Adults with incomplete vaccination records and no vaccination in the last year",
        "trigger": {
            "type": "and",
            "conditions": [
                {"type": "comparison", "field": "age", "op": ">=", "value": 18},
                {"type": "comparison", "field": "vaccination_count", "op": "<", "value": 2},
            ],
        },
        "outcome": {
            "type": "not",
            "condition": {"type": "windowed_count", "fact": "vaccination", "within_days": 365, "min_count": 1},
        },
        "minimum_cases": 10,
        "confidence_threshold": 0.7,
        "recommended_actions": [
            "Review vaccination history",
            "Schedule missing vaccinations",
        ],
    },
    {
        "id": "severe_allergy_cluster",
        "name": "Allergy Cluster Pattern",
        "description": "Severe allergies with repeated visits in the last 90 days",
        "trigger": {"type": "comparison", "field": "severe_allergy_count", "op": ">=", "value": 1},
        "outcome": {"type": "windowed_count", "fact": "visit", "within_days": 90, "min_count": 2},
        "minimum_cases": 5,
        "confidence_threshold": 0.6,
        "recommended_actions": [
            "Allergy management review",
            "Investigate environmental factors",
        ],
    },
    {
        "id": "recent_lab_anomalies",
        "name": "Lab Result Anomaly Pattern",
        "description": "Two or more abnormal lab results in 3 months alongside an active diagnosis",
        "trigger": {"type": "windowed_count", "fact": "lab_abnormal", "within_days": 90, "min_count": 2},
        "outcome": {"type": "comparison", "field": "active_diagnosis_count", "op": ">=", "value": 1},
        "minimum_cases": 10,
        "confidence_threshold": 0.7,
        "recommended_actions": [
            "Review abnormal lab results",
            "Consider additional testing",
        ],
    },
    {
        "id": "diagnosis_trend",
        "name": "Diagnosis Trend Pattern",
        "description": "Multiple new diagnoses in 6 months with frequent recent visits",
        "trigger": {"type": "windowed_count", "fact": "diagnosis", "within_days": 180, "min_count": 2},
        "outcome": {"type": "comparison", "field": "recent_visit_count", "op": ">=", "value": 3},
        "minimum_cases": 5,
        "confidence_threshold": 0.6,
        "recommended_actions": [
            "Monitor disease progression",
            "Consider preventive measures",
        ],
    },
    {
        "id": "allergy_respiratory_link",
        "name": "Allergy Respiratory Correlation",
        "description": "Active allergies followed by a respiratory diagnosis within 180 days",
        "trigger": {"type": "comparison", "field": "allergy_count", "op": ">=", "value": 1},
        "outcome": {
            "type": "windowed_count",
            "fact": "diagnosis",
            "within_days": 180,
            "min_count": 1,
            "categories": ["Respiratory"],
        },
        "minimum_cases": 10,
        "confidence_threshold": 0.3,
        "recommended_actions": ["Screen for respiratory complications"],
    },
)


def load_patterns(
    definitions: Iterable[Mapping[str, Any]],
    catalog: PatternCatalog | None = None,
    *,
    created_by: str = "system",
    **defaults: Any,
) -> PatternCatalog:
    """Register pattern definitions into ``catalog`` (a new one by default).

    ``defaults`` are forwarded to :func:`pattern_from_dict`.
    """

    target = catalog if catalog is not None else PatternCatalog()
    for definition in definitions:
        target.register(pattern_from_dict(definition, **defaults), created_by=created_by)
    return target


def default_catalog() -> PatternCatalog:
    return load_patterns(DEFAULT_PATTERN_DEFINITIONS)


__all__ = [
    "DEFAULT_PATTERN_DEFINITIONS",
    "default_catalog",
    "load_patterns",
]
