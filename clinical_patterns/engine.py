"""Detection engine: one pipeline run plus the query operations around it."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any, TypeVar, Union

from . import population
from .alerts import AlertGenerator, AlertStore, InMemoryAlertStore, InMemoryMatchStore, MatchStore
from .analytics import build_patient_analytics
from .catalog import PatternCatalog
from .config import EngineSettings
from .correlation import CorrelationAnalyzer, factor_kind
from .errors import DataUnavailableError, RunInProgressError
from .gateway import ClinicalDataGateway
from .matcher import PatternMatcher
from .models import (
    AlertOutcome,
    ClinicalSnapshot,
    CohortBreakdown,
    CohortFilter,
    CorrelationResult,
    DetectionRunReport,
    MedicalAlert,
    MedicalPattern,
    PatientAnalytics,
    PatternMatch,
    PopulationReport,
    RiskAssessment,
    RunState,
    SeasonalTrend,
)
from .pattern_library import load_patterns
from .risk import RiskScorer
from .seasonal import SeasonalTrendAnalyzer

logger = logging.getLogger(__name__)

T = TypeVar("T")

CohortSpec = Union[CohortFilter, Iterable[str], None]

POPULATION_REPORT_DAYS = 730
DEFERRED_LOG_LIMIT = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _preview(patient_ids: Sequence[str]) -> str:
    shown = ", ".join(patient_ids[:DEFERRED_LOG_LIMIT])
    hidden = len(patient_ids) - DEFERRED_LOG_LIMIT
    return f"{shown} (+{hidden} more)" if hidden > 0 else shown


def _as_filter(cohort: Any) -> CohortFilter | None:
    if cohort is None or isinstance(cohort, CohortFilter):
        return cohort
    if isinstance(cohort, str):
        return CohortFilter(patient_ids=frozenset({cohort}))
    return CohortFilter(patient_ids=frozenset(cohort))


class DetectionEngine:
    """Runs detection cycles over a cohort and answers analytics queries.

    A cycle moves through ``LOADING_SNAPSHOT``, ``MATCHING``, ``SCORING`` and
    ``ALERTING`` before returning to ``IDLE``. Only one cycle runs at a time;
    a second call while one is in flight raises ``RunInProgressError``.
    """

    def __init__(
        self,
        gateway: ClinicalDataGateway,
        *,
        catalog: PatternCatalog | None = None,
        settings: EngineSettings | None = None,
        alert_store: AlertStore | None = None,
        match_store: MatchStore | None = None,
        clock: Callable[[], datetime] | None = None,
        today: Callable[[], date] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._settings = (settings or EngineSettings()).validate()
        self._gateway = gateway
        self._catalog = catalog if catalog is not None else PatternCatalog()
        self._clock = clock or _utcnow
        self._today = today or date.today
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        settings = self._settings
        self._matcher = PatternMatcher(clock=self._clock, id_factory=self._id_factory)
        self._scorer = RiskScorer(
            weights=settings.risk_weights,
            scales=settings.signal_scales,
            bands=settings.risk_bands,
            notable_threshold=settings.notable_signal_threshold,
        )
        self._alerts = AlertGenerator(
            alert_store if alert_store is not None else InMemoryAlertStore(),
            thresholds=settings.alert_thresholds,
            clock=self._clock,
            id_factory=self._id_factory,
        )
        self._match_store = match_store if match_store is not None else InMemoryMatchStore()
        self._correlation = CorrelationAnalyzer(minimum_sample=settings.correlation_minimum_sample)
        self._seasonal = SeasonalTrendAnalyzer(deviation_percent=settings.seasonal_deviation_percent)

        self._state = RunState.IDLE
        self._running = False

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def catalog(self) -> PatternCatalog:
        return self._catalog

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def match_store(self) -> MatchStore:
        return self._match_store

    def add_patterns(self, definitions: Iterable[Mapping[str, Any]], *, created_by: str = "system") -> None:
        """Register JSON pattern definitions, filling gaps from the settings defaults."""

        load_patterns(
            definitions,
            self._catalog,
            created_by=created_by,
            default_minimum_cases=self._settings.default_minimum_cases,
            default_confidence_threshold=self._settings.default_confidence_threshold,
        )

    # --- detection cycle -----------------------------------------------------

    async def run_detection_cycle(self, cohort: CohortSpec = None) -> DetectionRunReport:
        if self._running:
            raise RunInProgressError("A detection cycle is already running")
        self._running = True
        try:
            return await self._run_cycle(_as_filter(cohort))
        finally:
            self._state = RunState.IDLE
            self._running = False

    async def _run_cycle(self, cohort_filter: CohortFilter | None) -> DetectionRunReport:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.run_timeout_seconds
        run_id = self._id_factory()
        started_at = self._clock()
        patterns = self._catalog.snapshot()
        as_of = self._today()

        self._state = RunState.LOADING_SNAPSHOT
        patient_ids = await self._gateway.list_patient_ids(cohort_filter)
        snapshots, skipped, deferred = await self._load_snapshots(patient_ids, as_of, deadline)
        if cohort_filter is not None:
            snapshots = [snapshot for snapshot in snapshots if cohort_filter.matches(snapshot)]

        self._state = RunState.MATCHING
        result = self._matcher.match(patterns, snapshots)
        for pattern_id, diagnostic in result.failures.items():
            logger.warning("Run %s: pattern %s failed: %s", run_id, pattern_id, diagnostic)
        await self._match_store.save_many(result.matches)

        self._state = RunState.SCORING
        assessments = {snapshot.patient_id: self._scorer.score(snapshot) for snapshot in snapshots}

        self._state = RunState.ALERTING
        patterns_by_id = {pattern.pattern_id: pattern for pattern in patterns}
        matches_by_patient = result.matches_by_patient()
        alert_jobs = {
            patient_id: self._alert_patient(
                matches_by_patient.get(patient_id, []), patterns_by_id, assessments[patient_id]
            )
            for patient_id in assessments
        }
        outcomes, late = await self._within_deadline(alert_jobs, deadline)
        if late:
            logger.warning(
                "Run %s: alerting for %d patient(s) deferred by the run budget: %s",
                run_id,
                len(late),
                _preview(late),
            )
        deferred.extend(late)

        tally: Counter[AlertOutcome] = Counter()
        for patient_outcomes in outcomes.values():
            tally.update(patient_outcomes)

        report = DetectionRunReport(
            run_id=run_id,
            started_at=started_at,
            finished_at=self._clock(),
            cohort_size=len(patient_ids),
            processed_patients=tuple(patient_id for patient_id in assessments if patient_id in outcomes),
            skipped_patients=skipped,
            deferred_patients=tuple(deferred),
            evaluations=result.evaluations,
            matches=tuple(result.matches),
            risk_assessments=tuple(assessments.values()),
            alerts_created=tally[AlertOutcome.CREATED],
            alerts_refreshed=tally[AlertOutcome.REFRESHED],
            alerts_suppressed=tally[AlertOutcome.SUPPRESSED],
            timed_out=bool(deferred),
        )
        logger.info(
            "Run %s finished: %d patients processed, %d skipped, %d deferred, %d matches, "
            "%d alerts created, %d high-risk patients",
            run_id,
            len(report.processed_patients),
            len(report.skipped_patients),
            len(report.deferred_patients),
            len(report.matches),
            report.alerts_created,
            len(report.high_risk_patients),
        )
        return report

    async def _load_snapshots(
        self,
        patient_ids: Sequence[str],
        as_of: date,
        deadline: float,
    ) -> tuple[list[ClinicalSnapshot], dict[str, str], list[str]]:
        semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        timeout = self._settings.gateway_timeout_seconds

        async def load(patient_id: str) -> ClinicalSnapshot | str:
            async with semaphore:
                try:
                    return await asyncio.wait_for(self._gateway.get_snapshot(patient_id, as_of=as_of), timeout)
                except DataUnavailableError as exc:
                    logger.warning("Skipping patient %s: %s", patient_id, exc.reason)
                    return exc.reason
                except asyncio.TimeoutError:
                    logger.warning("Skipping patient %s: gateway timed out after %.1fs", patient_id, timeout)
                    return f"gateway timed out after {timeout}s"

        loaded, deferred = await self._within_deadline(
            {patient_id: load(patient_id) for patient_id in patient_ids}, deadline
        )
        if deferred:
            logger.warning(
                "Run budget exhausted while loading; %d patient(s) deferred: %s", len(deferred), _preview(deferred)
            )

        snapshots: list[ClinicalSnapshot] = []
        skipped: dict[str, str] = {}
        for patient_id in patient_ids:
            if patient_id not in loaded:
                continue
            value = loaded[patient_id]
            if isinstance(value, ClinicalSnapshot):
                snapshots.append(value)
            else:
                skipped[patient_id] = value
        return snapshots, skipped, deferred

    @staticmethod
    async def _within_deadline(
        jobs: Mapping[str, Awaitable[T]],
        deadline: float,
    ) -> tuple[dict[str, T], list[str]]:
        """Run ``jobs`` concurrently; whatever is unfinished at ``deadline`` is cancelled."""

        if not jobs:
            return {}, []
        loop = asyncio.get_running_loop()
        tasks = {key: asyncio.ensure_future(job) for key, job in jobs.items()}
        try:
            remaining = max(0.0, deadline - loop.time())
            _, pending = await asyncio.wait(tasks.values(), timeout=remaining)
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        finished = {key: task.result() for key, task in tasks.items() if task not in pending}
        late = [key for key, task in tasks.items() if task in pending]
        return finished, late

    async def _alert_patient(
        self,
        matches: Sequence[PatternMatch],
        patterns_by_id: Mapping[str, MedicalPattern],
        assessment: RiskAssessment,
    ) -> list[AlertOutcome]:
        outcomes = []
        for match in matches:
            outcome, _ = await self._alerts.process_match(match, patterns_by_id[match.pattern_id])
            outcomes.append(outcome)
        risk_alert = await self._alerts.process_risk(assessment)
        if risk_alert is not None:
            outcomes.append(risk_alert[0])
        return outcomes

    # --- per-patient queries -------------------------------------------------

    async def _snapshot(self, patient_id: str) -> ClinicalSnapshot:
        try:
            return await asyncio.wait_for(
                self._gateway.get_snapshot(patient_id, as_of=self._today()),
                self._settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise DataUnavailableError(patient_id, "gateway timed out") from None

    async def get_patient_risk(self, patient_id: str) -> RiskAssessment:
        return self._scorer.score(await self._snapshot(patient_id))

    async def get_patient_analytics(self, patient_id: str) -> PatientAnalytics:
        snapshot = await self._snapshot(patient_id)
        open_alerts = await self._alerts.store.list_alerts(patient_id=patient_id, unread_only=True)
        return build_patient_analytics(snapshot, self._scorer.score(snapshot), open_alerts)

    # --- population queries --------------------------------------------------

    async def _cohort(self, cohort_filter: CohortFilter | None) -> list[ClinicalSnapshot]:
        try:
            return await asyncio.wait_for(
                self._gateway.get_cohort_snapshots(cohort_filter, as_of=self._today()),
                self._settings.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise DataUnavailableError(None, "gateway timed out loading the cohort") from None

    def _risk_scores(self, snapshots: Sequence[ClinicalSnapshot]) -> dict[str, float]:
        return {snapshot.patient_id: self._scorer.score(snapshot).risk_score for snapshot in snapshots}

    async def get_correlation(
        self,
        factor_a: str,
        factor_b: str,
        cohort_filter: CohortFilter | None = None,
    ) -> CorrelationResult:
        factor_kind(factor_a)
        factor_kind(factor_b)
        snapshots = await self._cohort(cohort_filter)
        risk_scores = self._risk_scores(snapshots) if "risk" in (factor_a, factor_b) else None
        return self._correlation.analyze(snapshots, factor_a, factor_b, risk_scores=risk_scores)

    async def get_default_correlations(self, cohort_filter: CohortFilter | None = None) -> list[CorrelationResult]:
        snapshots = await self._cohort(cohort_filter)
        return self._correlation.analyze_default_pairs(snapshots, risk_scores=self._risk_scores(snapshots))

    async def get_seasonal_trends(self, start: date, end: date) -> list[SeasonalTrend]:
        visits = await self._gateway.get_visits(start, end)
        return self._seasonal.analyze(visits, start, end)

    async def get_population_breakdown(
        self,
        by: str,
        cohort_filter: CohortFilter | None = None,
    ) -> list[CohortBreakdown]:
        if by not in population.BREAKDOWN_DIMENSIONS:
            raise ValueError(f"Unsupported breakdown '{by}'")
        snapshots = await self._cohort(cohort_filter)
        assessments = {snapshot.patient_id: self._scorer.score(snapshot) for snapshot in snapshots}
        return population.summarize(snapshots, assessments, by)

    async def build_population_report(self) -> PopulationReport:
        """Default correlations, last-two-years seasonal trends and cohort breakdowns."""

        end = self._today()
        start = end - timedelta(days=POPULATION_REPORT_DAYS)
        snapshots = await self._cohort(None)
        assessments = {snapshot.patient_id: self._scorer.score(snapshot) for snapshot in snapshots}
        risk_scores = {patient_id: item.risk_score for patient_id, item in assessments.items()}
        return PopulationReport(
            generated_at=self._clock(),
            start=start,
            end=end,
            correlations=tuple(self._correlation.analyze_default_pairs(snapshots, risk_scores=risk_scores)),
            seasonal_trends=tuple(await self.get_seasonal_trends(start, end)),
            blood_type_breakdown=tuple(population.summarize_by_blood_type(snapshots, assessments)),
            age_group_breakdown=tuple(population.summarize_by_age_group(snapshots, assessments)),
        )

    # --- alerts ----------------------------------------------------------------

    async def acknowledge_alert(self, alert_id: str, reader_id: str) -> MedicalAlert:
        return await self._alerts.acknowledge(alert_id, reader_id)

    async def get_pending_alerts(self) -> list[MedicalAlert]:
        return await self._alerts.pending_alerts()

    async def mark_alert_notified(self, alert_id: str) -> MedicalAlert:
        return await self._alerts.mark_notified(alert_id)

    async def list_alerts(self, patient_id: str | None = None, unread_only: bool = False) -> list[MedicalAlert]:
        return await self._alerts.store.list_alerts(patient_id=patient_id, unread_only=unread_only)


__all__ = ["CohortSpec", "DetectionEngine", "POPULATION_REPORT_DAYS"]
