"""Cohort-level evaluation of medical patterns."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .conditions import observed_facts
from .errors import MalformedPatternError
from .models import (
    ClinicalSnapshot,
    MedicalPattern,
    PatternEvaluation,
    PatternMatch,
    PatternStatus,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MatchResult:
    """All pattern evaluations for one cohort."""

    evaluations: Sequence[PatternEvaluation] = field(default_factory=tuple)

    @property
    def matches(self) -> list[PatternMatch]:
        return [match for evaluation in self.evaluations for match in evaluation.matches]

    @property
    def failures(self) -> dict[str, str]:
        return {
            evaluation.pattern_id: evaluation.diagnostic or ""
            for evaluation in self.evaluations
            if evaluation.status is PatternStatus.FAILED
        }

    def matches_by_patient(self) -> dict[str, list[PatternMatch]]:
        grouped: dict[str, list[PatternMatch]] = {}
        for match in self.matches:
            grouped.setdefault(match.patient_id, []).append(match)
        return grouped


class PatternMatcher:
    """Evaluates trigger/outcome patterns over a cohort of snapshots.

    Confidence is the share of trigger-satisfying patients for whom the
    outcome also holds. A pattern whose trigger population is smaller than
    its ``minimum_cases`` reports ``INSUFFICIENT_DATA`` and emits nothing.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._clock = clock or _utcnow
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    def match(self, patterns: Iterable[MedicalPattern], snapshots: Sequence[ClinicalSnapshot]) -> MatchResult:
        """Evaluate every pattern; one failing pattern never stops the others."""

        evaluations = [self.evaluate_pattern(pattern, snapshots) for pattern in patterns if pattern.is_active]
        return MatchResult(evaluations=tuple(evaluations))

    def evaluate_pattern(self, pattern: MedicalPattern, snapshots: Sequence[ClinicalSnapshot]) -> PatternEvaluation:
        try:
            return self._evaluate(pattern, snapshots)
        except MalformedPatternError as exc:
            logger.warning("Pattern %s excluded from this run: %s", pattern.pattern_id, exc)
            return PatternEvaluation(
                pattern_id=pattern.pattern_id,
                status=PatternStatus.FAILED,
                diagnostic=str(exc),
            )

    def _evaluate(self, pattern: MedicalPattern, snapshots: Sequence[ClinicalSnapshot]) -> PatternEvaluation:
        triggered = [snapshot for snapshot in snapshots if pattern.trigger.evaluate(snapshot)]
        trigger_count = len(triggered)
        if trigger_count < pattern.minimum_cases:
            return PatternEvaluation(
                pattern_id=pattern.pattern_id,
                status=PatternStatus.INSUFFICIENT_DATA,
                trigger_count=trigger_count,
            )

        supported = [snapshot for snapshot in triggered if pattern.outcome.evaluate(snapshot)]
        outcome_count = len(supported)
        confidence = outcome_count / trigger_count
        if confidence < pattern.confidence_threshold:
            return PatternEvaluation(
                pattern_id=pattern.pattern_id,
                status=PatternStatus.NOT_DETECTED,
                trigger_count=trigger_count,
                outcome_count=outcome_count,
                confidence=confidence,
            )

        detected_at = self._clock()
        matches = tuple(
            PatternMatch(
                match_id=self._id_factory(),
                pattern_id=pattern.pattern_id,
                pattern_name=pattern.name,
                patient_id=snapshot.patient_id,
                confidence_score=confidence,
                detected_at=detected_at,
                matching_data={
                    "as_of": snapshot.as_of.isoformat(),
                    "trigger_facts": observed_facts(pattern.trigger, snapshot),
                    "trigger_population": trigger_count,
                    "outcome_population": outcome_count,
                },
            )
            for snapshot in supported
        )
        return PatternEvaluation(
            pattern_id=pattern.pattern_id,
            status=PatternStatus.DETECTED,
            trigger_count=trigger_count,
            outcome_count=outcome_count,
            confidence=confidence,
            matches=matches,
        )


__all__ = ["MatchResult", "PatternMatcher"]
