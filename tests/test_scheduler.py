import asyncio
from datetime import datetime, timezone

import pytest

from clinical_builders import TODAY, healthy_patient
from clinical_patterns.config import EngineSettings
from clinical_patterns.engine import DetectionEngine
from clinical_patterns.errors import ConfigurationError, RunInProgressError
from clinical_patterns.gateway import InMemoryClinicalGateway
from clinical_patterns.models import CohortFilter, DetectionRunReport, RunState
from clinical_patterns.scheduler import DetectionScheduler, _cohort_ids

NOW = datetime(2024, 6, 30, tzinfo=timezone.utc)


async def _eventually(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def _engine(settings):
    gateway = InMemoryClinicalGateway(
        [healthy_patient("p1"), healthy_patient("p2"), healthy_patient("p3")],
        today=lambda: TODAY,
    )
    return DetectionEngine(gateway, settings=settings, today=lambda: TODAY)


class _StubEngine:
    """Stands in for ``DetectionEngine``; each call pops the next behaviour."""

    state = RunState.IDLE

    def __init__(self, settings, *behaviours):
        self.settings = settings
        self.calls = []
        self._behaviours = list(behaviours)

    async def run_detection_cycle(self, cohort=None):
        self.calls.append(cohort)
        behaviour = self._behaviours.pop(0) if self._behaviours else None
        if isinstance(behaviour, Exception):
            raise behaviour
        if isinstance(behaviour, asyncio.Event):
            await behaviour.wait()
        return DetectionRunReport(run_id=str(len(self.calls)), started_at=NOW, finished_at=NOW, cohort_size=0)

    async def build_population_report(self):  # pragma: no cover - not scheduled in these tests
        raise AssertionError("unexpected population report")


def test_cohort_ids_only_narrow_for_id_filters():
    assert _cohort_ids(None) is None
    assert _cohort_ids("p1") == {"p1"}
    assert _cohort_ids(["p1", "p2"]) == {"p1", "p2"}
    assert _cohort_ids(CohortFilter(patient_ids=frozenset({"p3"}))) == {"p3"}
    assert _cohort_ids(CohortFilter(patient_ids=frozenset({"p3"}), min_age=18)) is None


@pytest.mark.asyncio
async def test_run_once_records_last_report():
    scheduler = DetectionScheduler(_engine(EngineSettings()))

    report = await scheduler.run_once(["p1"])

    assert report.processed_patients == ("p1",)
    assert scheduler.last_report is report
    assert scheduler.state is RunState.IDLE


@pytest.mark.asyncio
async def test_triggers_are_coalesced_into_one_run():
    scheduler = DetectionScheduler(_engine(EngineSettings(initial_delay_seconds=3600)))
    await scheduler.start()

    scheduler.trigger(["p1"])
    scheduler.trigger("p2")
    assert scheduler.has_pending_trigger

    try:
        assert await _eventually(lambda: scheduler.last_report is not None)
        assert sorted(scheduler.last_report.processed_patients) == ["p1", "p2"]
        assert not scheduler.has_pending_trigger
    finally:
        await scheduler.stop()

    assert not scheduler.running


@pytest.mark.asyncio
async def test_trigger_for_everyone_absorbs_narrower_triggers():
    engine = _StubEngine(EngineSettings(initial_delay_seconds=3600))
    scheduler = DetectionScheduler(engine)
    await scheduler.start()

    scheduler.trigger(["p1"])
    scheduler.trigger()
    scheduler.trigger(["p2"])

    try:
        assert await _eventually(lambda: len(engine.calls) == 1)
    finally:
        await scheduler.stop()

    assert engine.calls == [None]


@pytest.mark.asyncio
async def test_scheduled_run_starts_after_initial_delay():
    engine = _StubEngine(EngineSettings(initial_delay_seconds=0, run_interval_seconds=3600))
    scheduler = DetectionScheduler(engine)
    await scheduler.start()

    try:
        assert await _eventually(lambda: scheduler.last_report is not None)
    finally:
        await scheduler.stop()

    assert engine.calls == [None]


@pytest.mark.asyncio
async def test_population_report_is_refreshed_on_its_own_interval():
    settings = EngineSettings(initial_delay_seconds=0, run_interval_seconds=3600, report_interval_seconds=3600)
    scheduler = DetectionScheduler(_engine(settings))
    await scheduler.start()

    try:
        assert await _eventually(lambda: scheduler.last_population_report is not None)
    finally:
        await scheduler.stop()

    report = scheduler.last_population_report
    assert report.end == TODAY
    assert [(item.group, item.count) for item in report.blood_type_breakdown] == [("A+", 3)]
    assert not scheduler.running


@pytest.mark.asyncio
async def test_failed_cycle_is_retried():
    settings = EngineSettings(initial_delay_seconds=0, retry_delay_seconds=0.01, run_interval_seconds=3600)
    engine = _StubEngine(settings, RuntimeError("backend down"))
    scheduler = DetectionScheduler(engine)
    await scheduler.start()

    try:
        assert await _eventually(lambda: scheduler.last_report is not None)
    finally:
        await scheduler.stop()

    assert len(engine.calls) == 2


@pytest.mark.asyncio
async def test_configuration_error_stops_the_scheduler():
    engine = _StubEngine(EngineSettings(initial_delay_seconds=0), ConfigurationError("weights do not sum to 1"))
    scheduler = DetectionScheduler(engine)
    await scheduler.start()

    assert await _eventually(lambda: not scheduler.running)
    assert len(engine.calls) == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_run_once_rejects_overlapping_runs():
    gate = asyncio.Event()
    engine = _StubEngine(EngineSettings(), gate)
    scheduler = DetectionScheduler(engine)

    first = asyncio.create_task(scheduler.run_once())
    await asyncio.sleep(0)

    with pytest.raises(RunInProgressError):
        await scheduler.run_once()

    gate.set()
    report = await first
    assert report.run_id == "1"


@pytest.mark.asyncio
async def test_stop_cancels_a_cycle_that_outlives_the_grace_period():
    gate = asyncio.Event()
    engine = _StubEngine(EngineSettings(initial_delay_seconds=0), gate)
    scheduler = DetectionScheduler(engine)
    await scheduler.start()
    assert await _eventually(lambda: len(engine.calls) == 1)

    await scheduler.stop(grace_seconds=0.05)

    assert not scheduler.running
    assert scheduler.last_report is None
