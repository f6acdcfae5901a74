"""Typed boolean expressions over clinical snapshots.

Pattern trigger and outcome conditions are trees built from six node types::

    Comparison     {"type": "comparison", "field": "allergy_count", "op": ">=", "value": 3}
    SetMembership  {"type": "in", "field": "diagnosis_categories", "values": ["Respiratory"]}
    WindowedCount  {"type": "windowed_count", "fact": "visit", "within_days": 90, "min_count": 5}
    And / Or       {"type": "and", "conditions": [...]}
    Not            {"type": "not", "condition": {...}}

``parse_condition`` validates the whole tree up front so a bad rule is
rejected when it is saved; ``evaluate`` is pure and only reads the snapshot.
"""
from __future__ import annotations

import json
import operator
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Sequence

from .errors import MalformedPatternError
from .models import ClinicalSnapshot, FactType

NUMERIC_FIELDS: frozenset[str] = frozenset(
    {
        "age",
        "visit_count",
        "recent_visit_count",
        "allergy_count",
        "severe_allergy_count",
        "vaccination_count",
        "days_since_last_vaccination",
        "diagnosis_count",
        "active_diagnosis_count",
        "lab_result_count",
        "lab_abnormal_count",
        "lab_abnormal_ratio",
    }
)
TEXT_FIELDS: frozenset[str] = frozenset({"blood_type", "gender"})
SET_FIELDS: frozenset[str] = frozenset({"allergy_severities", "allergens", "diagnosis_categories"})
SNAPSHOT_FIELDS: frozenset[str] = NUMERIC_FIELDS | TEXT_FIELDS | SET_FIELDS

_NUMERIC_OPS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
    "=": operator.eq,
    "!=": operator.ne,
}
_TEXT_OPS = {"=": operator.eq, "!=": operator.ne}
RANGE_OP = "between"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def field_value(snapshot: ClinicalSnapshot, name: str) -> Any:
    """Return a snapshot field by name, rejecting unknown fields."""

    if name not in SNAPSHOT_FIELDS:
        raise MalformedPatternError(f"Unknown snapshot field '{name}'")
    return getattr(snapshot, name)


class Condition(ABC):
    """Base class for condition tree nodes."""

    kind: str = ""

    @abstractmethod
    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        """Return whether the snapshot satisfies this condition."""

    @abstractmethod
    def validate(self) -> None:
        """Raise ``MalformedPatternError`` if the node is structurally invalid."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        ...

    def referenced_fields(self) -> Iterator[str]:
        return iter(())


@dataclass(frozen=True)
class Comparison(Condition):
    field: str
    op: str
    value: Any

    kind = "comparison"

    def validate(self) -> None:
        if self.field in NUMERIC_FIELDS:
            if self.op == RANGE_OP:
                if not isinstance(self.value, (tuple, list)) or len(self.value) != 2:
                    raise MalformedPatternError(f"'{RANGE_OP}' on '{self.field}' needs [low, high]")
                low, high = self.value
                if not (_is_number(low) and _is_number(high)):
                    raise MalformedPatternError(f"Range bounds for '{self.field}' must be numeric")
                if low > high:
                    raise MalformedPatternError(f"Range for '{self.field}' has low > high")
                return
            if self.op not in _NUMERIC_OPS:
                raise MalformedPatternError(f"Unsupported operator '{self.op}' for '{self.field}'")
            if not _is_number(self.value):
                raise MalformedPatternError(f"Comparison on '{self.field}' needs a numeric value")
        elif self.field in TEXT_FIELDS:
            if self.op not in _TEXT_OPS:
                raise MalformedPatternError(f"Only '=' and '!=' apply to text field '{self.field}'")
            if not isinstance(self.value, str):
                raise MalformedPatternError(f"Comparison on '{self.field}' needs a string value")
        elif self.field in SET_FIELDS:
            raise MalformedPatternError(f"Use an 'in' condition for collection field '{self.field}'")
        else:
            raise MalformedPatternError(f"Unknown snapshot field '{self.field}'")

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        actual = field_value(snapshot, self.field)
        if actual is None:
            return False
        try:
            if self.op == RANGE_OP:
                low, high = self.value
                return bool(low <= actual <= high)
            if self.field in TEXT_FIELDS:
                return bool(_TEXT_OPS[self.op](_normalize(actual), _normalize(self.value)))
            return bool(_NUMERIC_OPS[self.op](actual, self.value))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPatternError(f"Cannot evaluate {self.field} {self.op} {self.value!r}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if self.op == RANGE_OP else self.value
        return {"type": self.kind, "field": self.field, "op": self.op, "value": value}

    def referenced_fields(self) -> Iterator[str]:
        yield self.field


@dataclass(frozen=True)
class SetMembership(Condition):
    field: str
    values: frozenset

    kind = "in"

    def validate(self) -> None:
        if self.field not in SNAPSHOT_FIELDS:
            raise MalformedPatternError(f"Unknown snapshot field '{self.field}'")
        if not self.values:
            raise MalformedPatternError(f"'in' condition on '{self.field}' needs at least one value")
        numeric = self.field in NUMERIC_FIELDS
        for value in self.values:
            if numeric and not _is_number(value):
                raise MalformedPatternError(f"Values for numeric field '{self.field}' must be numbers")
            if not numeric and not isinstance(value, str):
                raise MalformedPatternError(f"Values for '{self.field}' must be strings")

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        actual = field_value(snapshot, self.field)
        if actual is None:
            return False
        wanted = {_normalize(v) for v in self.values}
        if self.field in SET_FIELDS:
            return any(_normalize(item) in wanted for item in actual)
        return _normalize(actual) in wanted

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "field": self.field, "values": sorted(self.values, key=str)}

    def referenced_fields(self) -> Iterator[str]:
        yield self.field


@dataclass(frozen=True)
class WindowedCount(Condition):
    fact: FactType
    within_days: int
    min_count: int
    categories: frozenset[str] | None = None

    kind = "windowed_count"

    def validate(self) -> None:
        if not isinstance(self.fact, FactType):
            raise MalformedPatternError(f"Unknown fact type {self.fact!r}")
        if not isinstance(self.within_days, int) or isinstance(self.within_days, bool) or self.within_days < 0:
            raise MalformedPatternError("'within_days' must be a non-negative integer")
        if not isinstance(self.min_count, int) or isinstance(self.min_count, bool) or self.min_count < 0:
            raise MalformedPatternError("'min_count' must be a non-negative integer")
        if self.categories is not None and not all(isinstance(c, str) for c in self.categories):
            raise MalformedPatternError("'categories' must be strings")

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        return snapshot.count_events(self.fact, self.within_days, self.categories) >= self.min_count

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.kind,
            "fact": self.fact.value,
            "within_days": self.within_days,
            "min_count": self.min_count,
        }
        if self.categories:
            payload["categories"] = sorted(self.categories)
        return payload

    def referenced_fields(self) -> Iterator[str]:
        yield f"{self.fact.value}_events_{self.within_days}d"


@dataclass(frozen=True)
class And(Condition):
    conditions: tuple[Condition, ...]

    kind = "and"

    def validate(self) -> None:
        if not self.conditions:
            raise MalformedPatternError("'and' needs at least one condition")
        for child in self.conditions:
            child.validate()

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        return all(child.evaluate(snapshot) for child in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "conditions": [child.to_dict() for child in self.conditions]}

    def referenced_fields(self) -> Iterator[str]:
        for child in self.conditions:
            yield from child.referenced_fields()


@dataclass(frozen=True)
class Or(Condition):
    conditions: tuple[Condition, ...]

    kind = "or"

    def validate(self) -> None:
        if not self.conditions:
            raise MalformedPatternError("'or' needs at least one condition")
        for child in self.conditions:
            child.validate()

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        return any(child.evaluate(snapshot) for child in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "conditions": [child.to_dict() for child in self.conditions]}

    def referenced_fields(self) -> Iterator[str]:
        for child in self.conditions:
            yield from child.referenced_fields()


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    kind = "not"

    def validate(self) -> None:
        self.condition.validate()

    def evaluate(self, snapshot: ClinicalSnapshot) -> bool:
        return not self.condition.evaluate(snapshot)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "condition": self.condition.to_dict()}

    def referenced_fields(self) -> Iterator[str]:
        return self.condition.referenced_fields()


def evaluate(condition: Condition, snapshot: ClinicalSnapshot) -> bool:
    """Evaluate a condition tree against one snapshot."""

    return condition.evaluate(snapshot)


def referenced_fields(condition: Condition) -> list[str]:
    """Return the distinct snapshot fields a condition reads, in order."""

    seen: dict[str, None] = {}
    for name in condition.referenced_fields():
        seen.setdefault(name, None)
    return list(seen)


def observed_facts(condition: Condition, snapshot: ClinicalSnapshot) -> dict[str, Any]:
    """Return the snapshot values each primitive in ``condition`` looked at."""

    facts: dict[str, Any] = {}
    pending: list[Condition] = [condition]
    while pending:
        node = pending.pop(0)
        if isinstance(node, (And, Or)):
            pending.extend(node.conditions)
        elif isinstance(node, Not):
            pending.append(node.condition)
        elif isinstance(node, WindowedCount):
            key = next(node.referenced_fields())
            facts[key] = snapshot.count_events(node.fact, node.within_days, node.categories)
        elif isinstance(node, (Comparison, SetMembership)):
            value = field_value(snapshot, node.field)
            facts[node.field] = sorted(value) if isinstance(value, frozenset) else value
    return facts


def parse_condition(data: Mapping[str, Any] | str) -> Condition:
    """Build and validate a condition tree from its dict or JSON form."""

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise MalformedPatternError(f"Condition is not valid JSON: {exc}") from exc
    condition = _build(data)
    condition.validate()
    return condition


def _build(data: Any) -> Condition:
    if isinstance(data, Condition):
        return data
    if not isinstance(data, Mapping):
        raise MalformedPatternError(f"Condition must be an object, got {type(data).__name__}")
    kind = data.get("type")
    try:
        if kind == "comparison":
            value = data["value"]
            if data["op"] == RANGE_OP and isinstance(value, list):
                value = tuple(value)
            return Comparison(field=data["field"], op=data["op"], value=value)
        if kind in ("in", "set_membership"):
            values = data["values"]
            if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
                raise MalformedPatternError("'values' must be a list")
            return SetMembership(field=data["field"], values=frozenset(values))
        if kind == "windowed_count":
            try:
                fact = FactType(data["fact"])
            except ValueError:
                raise MalformedPatternError(f"Unknown fact type {data['fact']!r}") from None
            categories = data.get("categories")
            if categories is not None:
                if isinstance(categories, str) or not isinstance(categories, Sequence):
                    raise MalformedPatternError("'categories' must be a list")
                categories = frozenset(categories)
            return WindowedCount(
                fact=fact,
                within_days=data["within_days"],
                min_count=data["min_count"],
                categories=categories,
            )
        if kind in ("and", "or"):
            children = data["conditions"]
            if isinstance(children, (str, bytes)) or not isinstance(children, Sequence):
                raise MalformedPatternError(f"'{kind}' needs a list of conditions")
            built = tuple(_build(child) for child in children)
            return And(built) if kind == "and" else Or(built)
        if kind == "not":
            return Not(_build(data["condition"]))
    except KeyError as exc:
        raise MalformedPatternError(f"'{kind}' condition is missing {exc.args[0]!r}") from None
    except TypeError as exc:
        raise MalformedPatternError(f"Invalid '{kind}' condition: {exc}") from None
    raise MalformedPatternError(f"Unknown condition type {kind!r}")


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    return condition.to_dict()


__all__ = [
    "And",
    "Comparison",
    "Condition",
    "NUMERIC_FIELDS",
    "Not",
    "Or",
    "SET_FIELDS",
    "SNAPSHOT_FIELDS",
    "SetMembership",
    "TEXT_FIELDS",
    "WindowedCount",
    "condition_to_dict",
    "evaluate",
    "field_value",
    "observed_facts",
    "parse_condition",
    "referenced_fields",
]
