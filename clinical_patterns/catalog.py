"""Catalog of medical pattern definitions."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Mapping

from .conditions import Condition, condition_to_dict, parse_condition
from .errors import MalformedPatternError
from .models import MedicalPattern

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_pattern(pattern: MedicalPattern) -> None:
    """Static checks run whenever a pattern is saved."""

    if not pattern.pattern_id:
        raise MalformedPatternError("Pattern must define a non-empty id")
    if not pattern.name:
        raise MalformedPatternError("Pattern must define a name", pattern_id=pattern.pattern_id)
    if not 0.0 <= pattern.confidence_threshold <= 1.0:
        raise MalformedPatternError(
            f"confidence_threshold must be within [0, 1] (got {pattern.confidence_threshold})",
            pattern_id=pattern.pattern_id,
        )
    if pattern.minimum_cases < 1:
        raise MalformedPatternError("minimum_cases must be >= 1", pattern_id=pattern.pattern_id)
    for label, condition in (("trigger", pattern.trigger), ("outcome", pattern.outcome)):
        if not isinstance(condition, Condition):
            raise MalformedPatternError(f"{label} is not a condition tree", pattern_id=pattern.pattern_id)
        try:
            condition.validate()
        except MalformedPatternError as exc:
            raise MalformedPatternError(f"{label}: {exc}", pattern_id=pattern.pattern_id) from exc


class PatternCatalog:
    """Keeps track of pattern definitions by id.

    Patterns are never removed; ``deactivate`` is the only way to retire one.
    ``snapshot`` hands a run an immutable view so edits made while a run is
    in flight only take effect on the next run.
    """

    def __init__(self, patterns: Iterable[MedicalPattern] = (), *, clock: Clock | None = None) -> None:
        self._patterns: Dict[str, MedicalPattern] = {}
        self._lock = Lock()
        self._clock = clock or _utcnow
        for pattern in patterns:
            self.register(pattern)

    def register(self, pattern: MedicalPattern, *, created_by: str | None = None) -> MedicalPattern:
        validate_pattern(pattern)
        now = self._clock()
        stored = replace(
            pattern,
            created_at=pattern.created_at or now,
            updated_at=pattern.updated_at or now,
            created_by=pattern.created_by or created_by,
        )
        with self._lock:
            if pattern.pattern_id in self._patterns:
                raise ValueError(f"Pattern '{pattern.pattern_id}' already registered")
            self._patterns[pattern.pattern_id] = stored
        return stored

    def update(self, pattern_id: str, /, *, updated_by: str | None = None, **changes: Any) -> MedicalPattern:
        """Apply field changes to an existing pattern and revalidate it."""

        if "pattern_id" in changes:
            raise ValueError("pattern_id cannot be changed")
        with self._lock:
            current = self._patterns[pattern_id]
            updated = replace(current, **changes, updated_at=self._clock(), updated_by=updated_by)
            validate_pattern(updated)
            self._patterns[pattern_id] = updated
        return updated

    def deactivate(self, pattern_id: str, *, updated_by: str | None = None) -> MedicalPattern:
        return self.update(pattern_id, is_active=False, updated_by=updated_by)

    def activate(self, pattern_id: str, *, updated_by: str | None = None) -> MedicalPattern:
        return self.update(pattern_id, is_active=True, updated_by=updated_by)

    def get(self, pattern_id: str) -> MedicalPattern:
        return self._patterns[pattern_id]

    def items(self) -> Iterable[tuple[str, MedicalPattern]]:
        return list(self._patterns.items())

    def values(self) -> Iterable[MedicalPattern]:
        return list(self._patterns.values())

    def active(self) -> list[MedicalPattern]:
        return [pattern for pattern in self._patterns.values() if pattern.is_active]

    def snapshot(self) -> tuple[MedicalPattern, ...]:
        """Return the active patterns as they are right now."""

        with self._lock:
            return tuple(pattern for pattern in self._patterns.values() if pattern.is_active)

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, pattern_id: object) -> bool:
        return pattern_id in self._patterns


def pattern_from_dict(
    data: Mapping[str, Any],
    *,
    default_minimum_cases: int = 10,
    default_confidence_threshold: float = 0.7,
) -> MedicalPattern:
    """Build a pattern from its JSON form; conditions may be dicts or JSON strings."""

    try:
        pattern_id = str(data["id"] if "id" in data else data["pattern_id"])
        name = data["name"]
        trigger_data = data["trigger"]
        outcome_data = data["outcome"]
    except KeyError as exc:
        raise MalformedPatternError(f"Pattern definition missing {exc.args[0]!r}") from None
    try:
        trigger = parse_condition(trigger_data)
        outcome = parse_condition(outcome_data)
    except MalformedPatternError as exc:
        raise MalformedPatternError(str(exc), pattern_id=pattern_id) from exc

    return MedicalPattern(
        pattern_id=pattern_id,
        name=name,
        description=data.get("description", ""),
        trigger=trigger,
        outcome=outcome,
        minimum_cases=int(data.get("minimum_cases", default_minimum_cases)),
        confidence_threshold=float(data.get("confidence_threshold", default_confidence_threshold)),
        is_active=bool(data.get("is_active", True)),
        recommended_actions=tuple(data.get("recommended_actions", ())),
    )


def pattern_to_dict(pattern: MedicalPattern) -> dict[str, Any]:
    return {
        "id": pattern.pattern_id,
        "name": pattern.name,
        "description": pattern.description,
        "trigger": condition_to_dict(pattern.trigger),
        "outcome": condition_to_dict(pattern.outcome),
        "minimum_cases": pattern.minimum_cases,
        "confidence_threshold": pattern.confidence_threshold,
        "is_active": pattern.is_active,
        "recommended_actions": list(pattern.recommended_actions),
    }


__all__ = [
    "PatternCatalog",
    "pattern_from_dict",
    "pattern_to_dict",
    "validate_pattern",
]
