"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — RECOMPUTE SCHEDULER
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Periodic recomputation of derived data.

JOBS
════

    master_aggregation   every 30 min   refresh MasterAggregate per master      → cache master:{id}
    program_metrics      every 20 min   metrics, warnings, window per program   → cache program:{id}
    violation_scan       every 60 min   DependencyViolationDetector.scan()      → cache violations:last
    portfolio_cache      every 15 min   health per node and per tenant          → cache health:{id},
                                                                                  portfolio:{tenant}

Each job fans its units (one master, one program, one tenant) out on a
thread pool. A failing unit is logged and counted; the other units still
run. Tenant and scan units isolate each node or edge inside the unit,
commit what succeeded, then report the unit as failed. Job state:

    IDLE ──► RUNNING ──► SUCCESS | PARTIAL_FAILURE ──► IDLE

A job whose previous run is still RUNNING is skipped by tick().

Usage:
    scheduler = RecomputeScheduler(store, provider)
    scheduler.tick()              # one pass, e.g. from an external cron
    scheduler.start()             # or drive tick() from a daemon thread
    scheduler.stop()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..analytics.aggregation_engine import AggregationEngine
from ..analytics.health_scorer import HealthScorer
from ..analytics.program_metrics import ProgramMetricsCalculator
from ..config import EngineSettings, Settings
from ..graph.dependency_engine import DependencyGraphEngine
from ..models import NodeStatus, RelationshipType
from ..store.base import GraphStore, NodeProvider
from .cache import TTLCache
from .notifications import Notifier
from .violation_detector import DependencyViolationDetector

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"
SKIPPED_MASTER_STATUSES = frozenset({NodeStatus.CANCELLED, NodeStatus.ON_HOLD})


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class JobState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"


# collect(now) -> (units to run, units skipped)
UnitCollector = Callable[[datetime], Tuple[List[str], List[str]]]
UnitRunner = Callable[[str, datetime], None]


@dataclass
class RecurringJob:
    name: str
    interval: timedelta
    collect: UnitCollector
    run_unit: UnitRunner
    state: JobState = JobState.IDLE
    last_outcome: Optional[JobState] = None
    last_run_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return self.last_run_at is None or now - self.last_run_at >= self.interval


@dataclass
class BatchResult:
    job_name: str
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    state: JobState = JobState.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": dict(self.failures),
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# SCHEDULER
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class RecomputeScheduler:

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        settings: Optional[EngineSettings] = None,
        cache: Optional[TTLCache] = None,
        notifier: Optional[Notifier] = None,
        engine: Optional[DependencyGraphEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()
        self._clock = clock or datetime.now
        self.cache = cache or TTLCache(self.settings.cache_ttl, clock=self._clock)

        self.engine = engine or DependencyGraphEngine(store, provider, self.settings, clock=self._clock)
        self.aggregation = AggregationEngine(store, provider, self.settings, clock=self._clock)
        self.programs = ProgramMetricsCalculator(store, provider, clock=self._clock)
        self.scorer = HealthScorer(clock=self._clock)
        self.detector = DependencyViolationDetector(
            store, provider, engine=self.engine, notifier=notifier,
            settings=self.settings, clock=self._clock,
        )

        self.jobs: Dict[str, RecurringJob] = {}
        for job in (
            RecurringJob(
                "master_aggregation",
                timedelta(minutes=self.settings.master_aggregation_minutes),
                self._collect_masters,
                self._aggregate_master,
            ),
            RecurringJob(
                "program_metrics",
                timedelta(minutes=self.settings.program_metrics_minutes),
                self._collect_programs,
                self._refresh_program,
            ),
            RecurringJob(
                "violation_scan",
                timedelta(minutes=self.settings.violation_scan_minutes),
                lambda now: (["all"], []),
                self._scan_violations,
            ),
            RecurringJob(
                "portfolio_cache",
                timedelta(minutes=self.settings.portfolio_cache_minutes),
                self._collect_tenants,
                self._refresh_portfolio,
            ),
        ):
            self.jobs[job.name] = job

        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── units ──────────────────────────────────────────────────────────────

    def _collect_masters(self, now: datetime) -> Tuple[List[str], List[str]]:
        master_ids = sorted({
            e.source_id
            for e in self.store.list_relationships(RelationshipType.MASTER)
            if e.source_id == e.target_id
        })
        nodes = self.provider.get_nodes(master_ids)
        run, skipped = [], []
        for master_id in master_ids:
            node = nodes.get(master_id)
            if node is not None and node.status in SKIPPED_MASTER_STATUSES:
                skipped.append(master_id)
            else:
                run.append(master_id)
        return run, skipped

    def _aggregate_master(self, master_id: str, now: datetime) -> None:
        aggregate = self.aggregation.refresh_master(master_id, now=now)
        self.cache.set(f"master:{master_id}", aggregate.to_dict())

    def _collect_programs(self, now: datetime) -> Tuple[List[str], List[str]]:
        return [p.program_id for p in self.store.list_programs()], []

    def _refresh_program(self, program_id: str, now: datetime) -> None:
        metrics = self.programs.metrics(program_id, now=now)
        warnings = self.programs.health_warnings(program_id, metrics, now=now)
        self.programs.widen_program_window(program_id)
        self.cache.set(f"program:{program_id}", {"metrics": metrics.to_dict(), "warnings": warnings})

    def _scan_violations(self, unit: str, now: datetime) -> None:
        report = self.detector.scan(now=now)
        self.cache.set("violations:last", {
            "checked": report.checked,
            "by_severity": report.by_severity(),
            "violations": [v.to_dict() for v in report.violations],
            "cycles": report.cycles,
            "alerts_failed": report.alerts_failed,
            "failed_checks": dict(report.failed),
        })
        if report.failed:
            raise RuntimeError(f"{len(report.failed)} dependency checks failed: {sorted(report.failed)}")

    def _collect_tenants(self, now: datetime) -> Tuple[List[str], List[str]]:
        tenants = {n.tenant_id or DEFAULT_TENANT for n in self.provider.list_nodes()}
        return sorted(tenants), []

    def _refresh_portfolio(self, tenant: str, now: datetime) -> None:
        nodes = [
            n for n in self.provider.list_nodes()
            if (n.tenant_id or DEFAULT_TENANT) == tenant
        ]
        health = self.scorer.portfolio_health(nodes, now=now)
        for record in health.records:
            self.cache.set(f"health:{record.node_id}", record.to_dict())
        self.cache.set(f"portfolio:{tenant}", health.to_dict())
        if health.failures:
            raise RuntimeError(f"{len(health.failures)} nodes failed to score: {sorted(health.failures)}")

    # ── execution ──────────────────────────────────────────────────────────

    def _run(self, job: RecurringJob, now: datetime) -> Optional[BatchResult]:
        with self._state_lock:
            if job.state == JobState.RUNNING:
                logger.warning(f"Job {job.name} is still running; skipping this tick")
                return None
            job.state = JobState.RUNNING

        result = BatchResult(job_name=job.name, started_at=now)
        try:
            units, skipped = job.collect(now)
        except Exception as exc:
            logger.exception(f"Job {job.name} failed to collect its units")
            units, skipped = [], []
            result.failed += 1
            result.failures["*"] = str(exc)
        result.skipped = len(skipped)

        if units:
            workers = max(1, min(self.settings.job_workers, len(units)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"recompute-{job.name}") as pool:
                futures = {pool.submit(job.run_unit, unit, now): unit for unit in units}
                for future in as_completed(futures):
                    unit = futures[future]
                    try:
                        future.result()
                        result.succeeded += 1
                    except Exception as exc:
                        logger.exception(f"Job {job.name} failed for unit {unit}")
                        result.failed += 1
                        result.failures[unit] = str(exc)

        result.state = JobState.PARTIAL_FAILURE if result.failed else JobState.SUCCESS
        result.finished_at = self._clock()
        with self._state_lock:
            job.last_outcome = result.state
            job.last_run_at = now
            job.state = JobState.IDLE

        log = logger.warning if result.failed else logger.info
        log(
            f"Job {job.name} finished: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    def run_job(self, name: str, now: Optional[datetime] = None) -> Optional[BatchResult]:
        """Run one job immediately, regardless of its cadence."""
        if name not in self.jobs:
            raise KeyError(f"Unknown job {name}")
        return self._run(self.jobs[name], now or self._clock())

    def tick(self, now: Optional[datetime] = None) -> List[BatchResult]:
        """Run every due job once, then sweep expired cache entries."""
        now = now or self._clock()
        results = []
        for job in self.jobs.values():
            if not job.is_due(now):
                continue
            result = self._run(job, now)
            if result is not None:
                results.append(result)
        self.cache.sweep()
        return results

    def cached(self, key: str, default: Any = None) -> Any:
        return self.cache.get(key, default)

    # ── background loop ────────────────────────────────────────────────────

    def start(self, poll_seconds: float = 60.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(poll_seconds,), daemon=True, name="recompute-scheduler"
        )
        self._thread.start()
        logger.info(f"Recompute scheduler started (poll every {poll_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Recompute scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, poll_seconds: float) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Recompute tick failed")
            self._stop.wait(poll_seconds)
