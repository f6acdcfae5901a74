"""Alert generation, deduplication and the stores behind it."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Hashable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from .config import AlertThresholds
from .errors import AlertNotFoundError, DedupConflictError
from .models import (
    AlertOutcome,
    MedicalAlert,
    MedicalPattern,
    PatternMatch,
    RiskAssessment,
    RiskLevel,
    Severity,
)

logger = logging.getLogger(__name__)

HIGH_RISK_ALERT = "HIGH_RISK"
CRITICAL_RISK_ALERT = "CRITICAL_RISK"

RISK_FACTOR_ACTIONS: dict[str, str] = {
    "recent_visits": "Schedule comprehensive health assessment",
    "active_allergies": "Allergy management review",
    "active_diagnoses": "Review chronic condition management",
    "lab_abnormality": "Review abnormal lab results",
    "vaccination_gap": "Update vaccination status",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def actions_for_risk_factors(risk_factors: Iterable[str]) -> tuple[str, ...]:
    """Map notable risk factors onto follow-up actions, keeping their order."""

    actions: list[str] = []
    for factor in risk_factors:
        action = RISK_FACTOR_ACTIONS.get(factor)
        if action and action not in actions:
            actions.append(action)
    return tuple(actions)


class AlertStore(Protocol):
    """Persistence contract for alerts.

    ``insert`` must raise ``DedupConflictError`` when an unread alert already
    exists for the same (patient_id, alert_type).
    """

    async def get(self, alert_id: str) -> Optional[MedicalAlert]:
        ...

    async def find_open(self, patient_id: str, alert_type: str) -> Optional[MedicalAlert]:
        ...

    async def insert(self, alert: MedicalAlert) -> None:
        ...

    async def replace(self, alert: MedicalAlert) -> None:
        ...

    async def list_alerts(self, patient_id: str | None = None, unread_only: bool = False) -> list[MedicalAlert]:
        ...


class MatchStore(Protocol):
    async def save_many(self, matches: Sequence[PatternMatch]) -> None:
        ...

    async def list_matches(self, patient_id: str | None = None) -> list[PatternMatch]:
        ...


class InMemoryAlertStore:
    """Dict-backed alert store with an index of open (unread) alerts."""

    def __init__(self) -> None:
        self._alerts: Dict[str, MedicalAlert] = {}
        self._open: Dict[tuple[str, str], str] = {}

    async def get(self, alert_id: str) -> Optional[MedicalAlert]:
        return self._alerts.get(alert_id)

    async def find_open(self, patient_id: str, alert_type: str) -> Optional[MedicalAlert]:
        alert_id = self._open.get((patient_id, alert_type))
        return self._alerts.get(alert_id) if alert_id else None

    async def insert(self, alert: MedicalAlert) -> None:
        existing_id = self._open.get(alert.dedup_key)
        if existing_id is not None and not alert.is_read:
            raise DedupConflictError(alert.patient_id, alert.alert_type, existing_id)
        self._store(alert)

    async def replace(self, alert: MedicalAlert) -> None:
        if alert.alert_id not in self._alerts:
            raise AlertNotFoundError(alert.alert_id)
        self._store(alert)

    async def list_alerts(self, patient_id: str | None = None, unread_only: bool = False) -> list[MedicalAlert]:
        alerts = [
            alert
            for alert in self._alerts.values()
            if (patient_id is None or alert.patient_id == patient_id) and not (unread_only and alert.is_read)
        ]
        return sorted(alerts, key=lambda alert: alert.created_at)

    def _store(self, alert: MedicalAlert) -> None:
        self._alerts[alert.alert_id] = alert
        if alert.is_read:
            if self._open.get(alert.dedup_key) == alert.alert_id:
                del self._open[alert.dedup_key]
        else:
            self._open[alert.dedup_key] = alert.alert_id

    def __len__(self) -> int:
        return len(self._alerts)


class InMemoryMatchStore:
    """Append-only history of pattern matches."""

    def __init__(self) -> None:
        self._matches: list[PatternMatch] = []

    async def save_many(self, matches: Sequence[PatternMatch]) -> None:
        self._matches.extend(matches)

    async def list_matches(self, patient_id: str | None = None) -> list[PatternMatch]:
        return [match for match in self._matches if patient_id is None or match.patient_id == patient_id]

    def __len__(self) -> int:
        return len(self._matches)


class KeyedLocks:
    """One ``asyncio.Lock`` per key, kept only while a task holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def __call__(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AlertGenerator:
    """Turns pattern matches and risk assessments into deduplicated alerts.

    At most one unread alert exists per (patient_id, alert_type). A new
    detection for an open key refreshes that alert unless it would lower
    its severity or confidence, in which case it is suppressed.
    """

    def __init__(
        self,
        store: AlertStore,
        *,
        thresholds: AlertThresholds | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._thresholds = thresholds or AlertThresholds()
        self._clock = clock or _utcnow
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._locks = KeyedLocks()

    @property
    def store(self) -> AlertStore:
        return self._store

    def severity_for_confidence(self, confidence: float) -> Severity:
        thresholds = self._thresholds
        if confidence >= thresholds.critical:
            return Severity.CRITICAL
        if confidence >= thresholds.high:
            return Severity.HIGH
        if confidence >= thresholds.medium:
            return Severity.MEDIUM
        return Severity.LOW

    async def process_match(
        self,
        match: PatternMatch,
        pattern: MedicalPattern,
        *,
        patient_count: int | None = None,
    ) -> tuple[AlertOutcome, MedicalAlert]:
        if patient_count is None:
            patient_count = int(match.matching_data.get("trigger_population", 1))
        percent = round(match.confidence_score * 100)
        return await self._upsert(
            patient_id=match.patient_id,
            alert_type=pattern.name,
            severity=self.severity_for_confidence(match.confidence_score),
            confidence=match.confidence_score,
            message=f"{pattern.name} detected for patient {match.patient_id} ({percent}% confidence)",
            description=pattern.description or None,
            recommended_actions=tuple(pattern.recommended_actions),
            pattern_match_id=match.match_id,
            patient_count=patient_count,
        )

    async def process_risk(self, assessment: RiskAssessment) -> tuple[AlertOutcome, MedicalAlert] | None:
        """Raise a risk alert for HIGH or CRITICAL assessments; others yield ``None``."""

        if assessment.risk_level is RiskLevel.CRITICAL:
            alert_type, severity = CRITICAL_RISK_ALERT, Severity.CRITICAL
        elif assessment.risk_level is RiskLevel.HIGH:
            alert_type, severity = HIGH_RISK_ALERT, Severity.HIGH
        else:
            return None

        factors = ", ".join(assessment.risk_factors) or "combined signals"
        return await self._upsert(
            patient_id=assessment.patient_id,
            alert_type=alert_type,
            severity=severity,
            confidence=assessment.risk_score,
            message=(
                f"Patient {assessment.patient_id} has {assessment.risk_level.value} risk "
                f"(score {assessment.risk_score:.2f})"
            ),
            description=f"Contributing factors: {factors}",
            recommended_actions=actions_for_risk_factors(assessment.risk_factors),
            pattern_match_id=None,
            patient_count=1,
        )

    async def acknowledge(self, alert_id: str, reader_id: str) -> MedicalAlert:
        alert = await self._require(alert_id)
        async with self._locks(alert.dedup_key):
            alert = await self._require(alert_id)
            if alert.is_read:
                return alert
            now = self._clock()
            updated = replace(alert, is_read=True, read_at=now, read_by=reader_id, updated_at=now)
            await self._store.replace(updated)
        logger.info("Alert %s acknowledged by %s", alert_id, reader_id)
        return updated

    async def mark_notified(self, alert_id: str) -> MedicalAlert:
        alert = await self._require(alert_id)
        async with self._locks(alert.dedup_key):
            alert = await self._require(alert_id)
            if alert.is_notified:
                return alert
            updated = replace(alert, is_notified=True, notified_at=self._clock())
            await self._store.replace(updated)
        return updated

    async def pending_alerts(self) -> list[MedicalAlert]:
        """Unread alerts the notifier has not delivered yet."""

        unread = await self._store.list_alerts(unread_only=True)
        return [alert for alert in unread if not alert.is_notified]

    async def _require(self, alert_id: str) -> MedicalAlert:
        alert = await self._store.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    async def _upsert(
        self,
        *,
        patient_id: str,
        alert_type: str,
        severity: Severity,
        confidence: float,
        message: str,
        description: str | None,
        recommended_actions: Sequence[str],
        pattern_match_id: str | None,
        patient_count: int,
    ) -> tuple[AlertOutcome, MedicalAlert]:
        async with self._locks((patient_id, alert_type)):
            now = self._clock()
            existing = await self._store.find_open(patient_id, alert_type)
            if existing is None:
                alert = MedicalAlert(
                    alert_id=self._id_factory(),
                    patient_id=patient_id,
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                    confidence_score=confidence,
                    created_at=now,
                    updated_at=now,
                    description=description,
                    recommended_actions=tuple(recommended_actions),
                    pattern_match_id=pattern_match_id,
                    patient_count=patient_count,
                )
                try:
                    await self._store.insert(alert)
                except DedupConflictError as exc:
                    logger.warning("%s; keeping the latest detection on the existing alert", exc)
                    existing = await self._require(exc.existing_alert_id)
                    overwritten = self._refreshed(
                        existing, alert, escalated=severity.rank > existing.severity.rank
                    )
                    await self._store.replace(overwritten)
                    return AlertOutcome.REFRESHED, overwritten
                logger.info("Created %s alert %s for patient %s", alert_type, alert.alert_id, patient_id)
                return AlertOutcome.CREATED, alert

            if severity.rank < existing.severity.rank or confidence < existing.confidence_score:
                logger.debug(
                    "Suppressed %s detection for patient %s: would downgrade alert %s",
                    alert_type,
                    patient_id,
                    existing.alert_id,
                )
                return AlertOutcome.SUPPRESSED, existing

            candidate = replace(
                existing,
                severity=severity,
                message=message,
                confidence_score=confidence,
                description=description,
                recommended_actions=tuple(recommended_actions),
                pattern_match_id=pattern_match_id or existing.pattern_match_id,
                patient_count=patient_count,
                updated_at=now,
            )
            refreshed = self._refreshed(existing, candidate, escalated=severity.rank > existing.severity.rank)
            await self._store.replace(refreshed)
            return AlertOutcome.REFRESHED, refreshed

    @staticmethod
    def _refreshed(existing: MedicalAlert, latest: MedicalAlert, *, escalated: bool) -> MedicalAlert:
        """Carry ``latest``'s content onto ``existing``'s identity."""

        return replace(
            latest,
            alert_id=existing.alert_id,
            created_at=existing.created_at,
            is_read=False,
            read_at=None,
            read_by=None,
            is_notified=False if escalated else existing.is_notified,
            notified_at=None if escalated else existing.notified_at,
        )


__all__ = [
    "AlertGenerator",
    "AlertStore",
    "CRITICAL_RISK_ALERT",
    "HIGH_RISK_ALERT",
    "InMemoryAlertStore",
    "InMemoryMatchStore",
    "KeyedLocks",
    "MatchStore",
    "RISK_FACTOR_ACTIONS",
    "actions_for_risk_factors",
]
