import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from clinical_patterns.alerts import (
    CRITICAL_RISK_ALERT,
    HIGH_RISK_ALERT,
    AlertGenerator,
    InMemoryAlertStore,
    KeyedLocks,
    actions_for_risk_factors,
)
from clinical_patterns.conditions import parse_condition
from clinical_patterns.errors import AlertNotFoundError, DedupConflictError
from clinical_patterns.models import (
    AlertOutcome,
    MedicalAlert,
    MedicalPattern,
    PatternMatch,
    RiskAssessment,
    RiskLevel,
    Severity,
)

START = datetime(2024, 6, 30, 8, 0, tzinfo=timezone.utc)

PATTERN = MedicalPattern(
    pattern_id="allergy_visits",
    name="Allergy Visit Pattern",
    description="Allergic patients with frequent visits",
    trigger=parse_condition({"type": "comparison", "field": "allergy_count", "op": ">=", "value": 1}),
    outcome=parse_condition({"type": "comparison", "field": "recent_visit_count", "op": ">=", "value": 3}),
    recommended_actions=("Allergy management review",),
)


class _Clock:
    def __init__(self):
        self._ticks = count()

    def __call__(self):
        return START + timedelta(minutes=next(self._ticks))


def _generator(store=None):
    ids = count(1)
    store = store if store is not None else InMemoryAlertStore()
    return AlertGenerator(store, clock=_Clock(), id_factory=lambda: f"a{next(ids)}")


def _match(confidence, patient_id="p1", match_id="m1"):
    return PatternMatch(
        match_id=match_id,
        pattern_id=PATTERN.pattern_id,
        pattern_name=PATTERN.name,
        patient_id=patient_id,
        confidence_score=confidence,
        detected_at=START,
        matching_data={"trigger_population": 12},
    )


def _assessment(level, score, patient_id="p1"):
    return RiskAssessment(
        patient_id=patient_id,
        risk_score=score,
        risk_level=level,
        risk_factors=("recent_visits", "vaccination_gap"),
    )


@pytest.mark.parametrize(
    "confidence, severity",
    [(0.2, Severity.LOW), (0.5, Severity.MEDIUM), (0.75, Severity.HIGH), (0.95, Severity.CRITICAL)],
)
def test_severity_follows_confidence_thresholds(confidence, severity):
    assert _generator().severity_for_confidence(confidence) is severity


@pytest.mark.asyncio
async def test_first_match_creates_alert():
    generator = _generator()

    outcome, alert = await generator.process_match(_match(0.8), PATTERN)

    assert outcome is AlertOutcome.CREATED
    assert alert.alert_id == "a1"
    assert alert.alert_type == "Allergy Visit Pattern"
    assert alert.severity is Severity.HIGH
    assert alert.message == "Allergy Visit Pattern detected for patient p1 (80% confidence)"
    assert alert.patient_count == 12
    assert alert.pattern_match_id == "m1"
    assert alert.recommended_actions == ("Allergy management review",)
    assert await generator.store.get("a1") == alert


@pytest.mark.asyncio
async def test_repeat_detection_refreshes_the_open_alert():
    generator = _generator()
    _, first = await generator.process_match(_match(0.8), PATTERN)

    outcome, refreshed = await generator.process_match(_match(0.85, match_id="m2"), PATTERN)

    assert outcome is AlertOutcome.REFRESHED
    assert refreshed.alert_id == first.alert_id
    assert refreshed.created_at == first.created_at
    assert refreshed.updated_at > first.updated_at
    assert refreshed.confidence_score == 0.85
    assert refreshed.pattern_match_id == "m2"
    assert len(await generator.store.list_alerts(unread_only=True)) == 1


@pytest.mark.asyncio
async def test_keyed_locks_serialize_per_key_and_forget_idle_keys():
    locks = KeyedLocks()
    order = []

    async def hold(key, tag):
        async with locks(key):
            order.append((tag, "in"))
            await asyncio.sleep(0.01)
            order.append((tag, "out"))

    await asyncio.gather(hold("k", "a"), hold("k", "b"), hold("other", "c"))

    keyed = [entry for entry in order if entry[0] in ("a", "b")]
    assert keyed == [("a", "in"), ("a", "out"), ("b", "in"), ("b", "out")]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_weaker_detection_is_suppressed():
    generator = _generator()
    _, first = await generator.process_match(_match(0.95), PATTERN)

    outcome, kept = await generator.process_match(_match(0.8, match_id="m2"), PATTERN)

    assert outcome is AlertOutcome.SUPPRESSED
    assert kept == first
    assert (await generator.store.get(first.alert_id)).severity is Severity.CRITICAL


@pytest.mark.asyncio
async def test_escalation_resets_notification_state():
    generator = _generator()
    _, first = await generator.process_match(_match(0.6), PATTERN)
    await generator.mark_notified(first.alert_id)

    _, same_level = await generator.process_match(_match(0.6, match_id="m2"), PATTERN)
    assert same_level.is_notified is True

    outcome, escalated = await generator.process_match(_match(0.8, match_id="m3"), PATTERN)

    assert outcome is AlertOutcome.REFRESHED
    assert escalated.severity is Severity.HIGH
    assert escalated.is_notified is False
    assert escalated.notified_at is None
    assert [alert.alert_id for alert in await generator.pending_alerts()] == [first.alert_id]


@pytest.mark.asyncio
async def test_acknowledged_alert_allows_a_new_one():
    generator = _generator()
    _, first = await generator.process_match(_match(0.8), PATTERN)

    read = await generator.acknowledge(first.alert_id, "dr-lee")
    again = await generator.acknowledge(first.alert_id, "someone-else")
    outcome, second = await generator.process_match(_match(0.8, match_id="m2"), PATTERN)

    assert read.is_read is True
    assert again.read_by == "dr-lee"
    assert outcome is AlertOutcome.CREATED
    assert second.alert_id != first.alert_id
    assert len(await generator.store.list_alerts(patient_id="p1")) == 2
    assert [alert.alert_id for alert in await generator.store.list_alerts(unread_only=True)] == [second.alert_id]


@pytest.mark.asyncio
async def test_unknown_alert_ids_raise():
    generator = _generator()

    with pytest.raises(AlertNotFoundError):
        await generator.acknowledge("missing", "dr-lee")
    with pytest.raises(AlertNotFoundError):
        await generator.mark_notified("missing")


@pytest.mark.asyncio
async def test_concurrent_detections_leave_one_unread_alert():
    generator = _generator()

    results = await asyncio.gather(
        *(generator.process_match(_match(0.8, match_id=f"m{i}"), PATTERN) for i in range(5))
    )

    outcomes = [outcome for outcome, _ in results]
    assert outcomes.count(AlertOutcome.CREATED) == 1
    assert outcomes.count(AlertOutcome.REFRESHED) == 4
    assert len(await generator.store.list_alerts(unread_only=True)) == 1


@pytest.mark.asyncio
async def test_risk_alerts_only_for_high_and_critical():
    generator = _generator()

    assert await generator.process_risk(_assessment(RiskLevel.MEDIUM, 0.45)) is None

    outcome, high = await generator.process_risk(_assessment(RiskLevel.HIGH, 0.7))
    assert outcome is AlertOutcome.CREATED
    assert high.alert_type == HIGH_RISK_ALERT
    assert high.severity is Severity.HIGH
    assert high.confidence_score == 0.7
    assert high.recommended_actions == (
        "Schedule comprehensive health assessment",
        "Update vaccination status",
    )

    _, critical = await generator.process_risk(_assessment(RiskLevel.CRITICAL, 0.9))
    assert critical.alert_type == CRITICAL_RISK_ALERT
    assert critical.severity is Severity.CRITICAL


def test_actions_for_risk_factors_skips_unknown_and_duplicates():
    assert actions_for_risk_factors(["lab_abnormality", "bogus", "lab_abnormality"]) == (
        "Review abnormal lab results",
    )


@pytest.mark.asyncio
async def test_store_rejects_second_unread_alert_for_same_key():
    store = InMemoryAlertStore()
    alert = MedicalAlert(
        alert_id="a1",
        patient_id="p1",
        alert_type="HIGH_RISK",
        severity=Severity.HIGH,
        message="m",
        confidence_score=0.7,
        created_at=START,
        updated_at=START,
    )
    await store.insert(alert)

    with pytest.raises(DedupConflictError) as excinfo:
        await store.insert(replace(alert, alert_id="a2"))

    assert excinfo.value.existing_alert_id == "a1"
    assert len(store) == 1


class _BlindStore(InMemoryAlertStore):
    """Never reports open alerts, so every detection reaches ``insert``."""

    async def find_open(self, patient_id, alert_type):
        return None


@pytest.mark.asyncio
async def test_dedup_conflict_overwrites_existing_alert():
    store = _BlindStore()
    generator = _generator(store)
    _, first = await generator.process_match(_match(0.6), PATTERN)

    outcome, latest = await generator.process_match(_match(0.8, match_id="m2"), PATTERN)

    assert outcome is AlertOutcome.REFRESHED
    assert latest.alert_id == first.alert_id
    assert latest.severity is Severity.HIGH
    assert latest.pattern_match_id == "m2"
    assert len(store) == 1
