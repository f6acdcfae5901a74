"""Periodic and on-demand execution of detection cycles."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Set, Union

from .engine import DetectionEngine
from .errors import ConfigurationError, RunInProgressError
from .models import CohortFilter, DetectionRunReport, PopulationReport, RunState

logger = logging.getLogger(__name__)

TriggerCohort = Union[CohortFilter, Iterable[str], None]


def _cohort_ids(cohort: TriggerCohort) -> Optional[Set[str]]:
    """Patient ids a trigger asks for; ``None`` means the whole population."""

    if cohort is None:
        return None
    if isinstance(cohort, CohortFilter):
        only_ids = cohort.min_age is None and cohort.max_age is None and cohort.blood_types is None
        if cohort.patient_ids is not None and only_ids:
            return set(cohort.patient_ids)
        return None
    if isinstance(cohort, str):
        return {cohort}
    return set(cohort)


class DetectionScheduler:
    """Runs the engine every ``run_interval_seconds`` and whenever triggered.

    Triggers that arrive while a cycle is running are coalesced into one
    follow-up cycle over the union of the requested cohorts.
    """

    def __init__(self, engine: DetectionEngine) -> None:
        self._engine = engine
        settings = engine.settings
        self._interval = settings.run_interval_seconds
        self._initial_delay = settings.initial_delay_seconds
        self._retry_delay = settings.retry_delay_seconds
        self._report_interval = settings.report_interval_seconds

        self._pending = False
        self._pending_ids: Optional[Set[str]] = set()
        self._wakeup: asyncio.Event | None = None
        self._run_lock: asyncio.Lock | None = None
        self._task: asyncio.Task | None = None
        self._report_task: asyncio.Task | None = None
        self._stopping = False
        self._last_report: DetectionRunReport | None = None
        self._last_population_report: PopulationReport | None = None

    @property
    def state(self) -> RunState:
        return self._engine.state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> DetectionRunReport | None:
        return self._last_report

    @property
    def last_population_report(self) -> PopulationReport | None:
        return self._last_population_report

    @property
    def has_pending_trigger(self) -> bool:
        return self._pending

    async def start(self) -> None:
        if self.running:
            return
        self._engine.settings.validate()
        self._stopping = False
        self._wakeup = wakeup = asyncio.Event()
        self._ensure_lock()
        self._task = asyncio.create_task(self._run_loop(wakeup), name="clinical-detection-scheduler")
        if self._report_interval is not None:
            self._report_task = asyncio.create_task(
                self._report_loop(self._report_interval), name="clinical-population-report"
            )
        logger.info(
            "Detection scheduler started: first run in %.0fs, then every %.0fs",
            self._initial_delay,
            self._interval,
        )

    async def stop(self, grace_seconds: float = 30.0) -> None:
        """Stop scheduling; a cycle in flight gets ``grace_seconds`` to finish."""

        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()
        if self._report_task is not None:
            await self._cancel(self._report_task)
            self._report_task = None
        if self._task is not None:
            _, pending = await asyncio.wait({self._task}, timeout=grace_seconds)
            if pending:
                logger.warning("Detection cycle still running after %.1fs; cancelling it", grace_seconds)
                await self._cancel(self._task)
            self._task = None
        logger.info("Detection scheduler stopped")

    def trigger(self, cohort: TriggerCohort = None) -> None:
        """Request a cycle as soon as possible."""

        ids = _cohort_ids(cohort)
        if not self._pending:
            self._pending = True
            self._pending_ids = ids
        elif self._pending_ids is not None:
            self._pending_ids = None if ids is None else self._pending_ids | ids
        if self._wakeup is not None:
            self._wakeup.set()

    async def run_once(self, cohort: TriggerCohort = None) -> DetectionRunReport:
        """Run one cycle right now, outside the periodic schedule."""

        lock = self._ensure_lock()
        if lock.locked():
            raise RunInProgressError("A scheduled detection cycle is already running")
        return await self._execute(cohort)

    def _ensure_lock(self) -> asyncio.Lock:
        if self._run_lock is None:
            self._run_lock = asyncio.Lock()
        return self._run_lock

    def _take_pending(self) -> Optional[Set[str]]:
        ids = self._pending_ids
        self._pending = False
        self._pending_ids = set()
        return ids

    async def _execute(self, cohort: TriggerCohort) -> DetectionRunReport:
        async with self._ensure_lock():
            report = await self._engine.run_detection_cycle(cohort)
        self._last_report = report
        logger.info(
            "Detection summary: %d alerts created, %d refreshed, %d high-risk patients, %d failed patterns",
            report.alerts_created,
            report.alerts_refreshed,
            len(report.high_risk_patients),
            len(report.failed_patterns),
        )
        return report

    @staticmethod
    async def _sleep_until(due: float, wakeup: asyncio.Event) -> bool:
        """Wait for ``due`` or a wake-up; return True when ``due`` was reached."""

        loop = asyncio.get_running_loop()
        remaining = due - loop.time()
        if remaining <= 0:
            return True
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            return True
        finally:
            wakeup.clear()
        return False

    async def _run_loop(self, wakeup: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_due = loop.time() + self._initial_delay
        while not self._stopping:
            scheduled = False
            if not self._pending:
                scheduled = await self._sleep_until(next_due, wakeup)
                if self._stopping:
                    break
            if scheduled:
                self._take_pending()
                cohort: Optional[Set[str]] = None
            elif self._pending:
                cohort = self._take_pending()
            else:
                continue

            try:
                await self._execute(cohort)
            except ConfigurationError:
                logger.exception("Detection scheduler stopped: invalid configuration")
                self._stopping = True
                break
            except Exception:
                logger.exception("Detection cycle failed; retrying in %.0fs", self._retry_delay)
                next_due = loop.time() + self._retry_delay
                continue

            if scheduled:
                next_due = loop.time() + self._interval

    async def _report_loop(self, interval: float) -> None:
        await asyncio.sleep(self._initial_delay)
        while not self._stopping:
            try:
                self._last_population_report = await self._engine.build_population_report()
                logger.info("Population report refreshed")
            except Exception:
                logger.exception("Population report failed")
            await asyncio.sleep(interval)

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["DetectionScheduler", "TriggerCohort"]
