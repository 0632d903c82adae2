"""Chunk Executor: runs one bounded chunk of one job.

A run owns the job through ``active_run_id`` from ``begin_run`` until
its chunk is committed. The commit writes the cursor, the counters and
the chunk sequence number in one guarded UPDATE, so a replayed chunk is
rejected instead of counted twice.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis
from loguru import logger as profiler
from sqlalchemy.exc import SQLAlchemyError

from backpressure import BackpressureController, Regime, get_backpressure
from config import settings
from database import SessionLocal
from dispatcher import ChunkDispatcher, dispatch_job, get_dispatcher
from exceptions import FatalWorkloadError, InvalidTransition, ItemError, UnknownJobKind
from job_store import JobStore, merge_metrics
from models import JobRecord, JobStatus, PauseReason
from monitoring import chunk_count, chunk_duration, item_count, job_count
from notifications import get_publisher
from workloads import ItemResult, Workload, get_workload

logger = logging.getLogger(__name__)


class ChunkOutcome(str, Enum):
    CONTINUED = "continued"  # committed, next chunk enqueued
    IDLE = "idle"  # committed, left processing for the sweep
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    ERROR = "error"
    DEFERRED = "deferred"  # backpressure active, nothing processed
    WAITING = "waiting"  # input exhausted, children still active
    SKIPPED = "skipped"  # lost the ownership guard


@dataclass
class ChunkReport:
    job_id: str
    outcome: ChunkOutcome
    kind: Optional[str] = None
    items: int = 0
    processed_units: int = 0
    total_units: int = 0
    duration: float = 0.0
    item_outcomes: Dict[str, int] = field(default_factory=dict)
    spawned: List[str] = field(default_factory=list)
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome.value,
            "kind": self.kind,
            "items": self.items,
            "processed_units": self.processed_units,
            "total_units": self.total_units,
            "duration": round(self.duration, 3),
            "item_outcomes": self.item_outcomes,
            "spawned": self.spawned,
            "detail": self.detail,
        }


class ChunkExecutor:
    """Processes at most ``chunk_size`` items of a job per run.

    Termination: end of input completes the job (once its children are
    done), a fatal workload error fails it, and an observed cancellation
    flag cancels it. A non-terminal chunk is continued either by an
    immediate enqueue or, if that is not possible, by leaving the job idle
    in ``processing`` for the dispatch sweep; never both.
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: ChunkDispatcher,
        backpressure: BackpressureController,
        workloads: Optional[Dict[str, Workload]] = None,
        config=settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.backpressure = backpressure
        self.workloads = workloads
        self.config = config
        self.clock = clock

    def run(self, job_id: str) -> ChunkReport:
        start = self.clock()
        run_id = str(uuid.uuid4())
        job = self.store.begin_run(job_id, run_id)
        if job is None:
            current = self.store.get(job_id)
            detail = f"job is {current.status}" if current else "job not found"
            if current is not None and current.active_run_id:
                detail += ", another run owns it"
            logger.info(f"Job {job_id}: chunk skipped, {detail}")
            return ChunkReport(job_id, ChunkOutcome.SKIPPED, kind=current.kind if current else None, detail=detail)

        try:
            report = self._run_owned(job, run_id, start)
        except Exception:
            # leave the job idle so the sweep or the stall detector can pick it up
            try:
                self.store.release_run(job_id, run_id)
            except SQLAlchemyError as e:
                logger.error(f"Job {job_id}: could not release run {run_id}: {e}")
            raise
        report.duration = self.clock() - start
        return report

    def _run_owned(self, job: JobRecord, run_id: str, start: float) -> ChunkReport:
        job_id = job.id
        kind = job.kind
        report = ChunkReport(job_id, ChunkOutcome.SKIPPED, kind=kind, total_units=job.total_units)

        if job.is_cancelling:
            return self._finish_cancel(job_id, report, run_id)
        if job.pending_error:
            return self._fail(job_id, job.pending_error, report, run_id)

        regime = self.backpressure.evaluate()
        if regime == Regime.BACKPRESSURE_ACTIVE:
            self.store.release_run(job_id, run_id)
            return self._defer(job_id, report)

        try:
            workload = get_workload(kind, self.workloads)
        except UnknownJobKind as e:
            return self._fail(job_id, str(e), report, run_id)

        chunk_size = self.backpressure.effective_chunk_size(job.chunk_size, regime)
        base_seq = job.chunks_processed
        base_metrics = dict(job.metrics or {})
        cursor = dict(job.cursor or {})
        processed = job.processed_units
        outcomes: Dict[str, int] = {}
        spawned: List[str] = []
        items = 0
        exhausted = True
        fatal = None

        deadline = start + self.config.chunk_soft_deadline_seconds
        last_beat = start
        try:
            for item, next_cursor in workload.iter_items(job, cursor):
                now = self.clock()
                if items >= chunk_size or (items and now >= deadline):
                    exhausted = False
                    break
                if now - last_beat >= self.config.heartbeat_interval_seconds:
                    last_beat = now
                    beat = self.store.heartbeat(job_id, run_id)
                    if beat is None:
                        logger.warning(f"Job {job_id}: run {run_id} lost ownership mid-chunk")
                        report.detail = "ownership lost"
                        return report
                    if beat.is_cancelling or beat.status != JobStatus.PROCESSING.value:
                        exhausted = False
                        break

                result = self._process_item(workload, job, item)
                outcomes[result.outcome] = outcomes.get(result.outcome, 0) + 1
                spawned.extend(result.spawned)
                cursor = next_cursor
                processed += 1
                items += 1
        except FatalWorkloadError as e:
            fatal = str(e)
        except SQLAlchemyError as e:
            self.store.db.rollback()
            fatal = f"Store error: {e}"

        report.items = items
        report.processed_units = processed
        report.item_outcomes = outcomes
        report.spawned = spawned

        if items:
            metrics = merge_metrics(base_metrics, outcomes)
            if not self.store.commit_chunk(job_id, run_id, base_seq, cursor, processed, metrics):
                logger.warning(f"Job {job_id}: chunk {base_seq} rejected, already committed or run replaced")
                report.detail = "commit rejected"
                return report
            logger.info(f"Job {job_id}: chunk {base_seq} committed, {processed}/{job.total_units} units")
        elif fatal is None:
            self.store.release_run(job_id, run_id)

        if fatal:
            return self._fail(job_id, fatal, report, run_id if not items else None)
        self._record_health(ok=True)

        for child_id in spawned:
            child = self.store.get(child_id)
            if child is not None:
                dispatch_job(self.store, self.dispatcher, self.backpressure, child, source="child")

        job = self.store.require(job_id)
        if job.is_cancelling:
            return self._finish_cancel(job_id, report)
        if job.status != JobStatus.PROCESSING.value:
            report.outcome = ChunkOutcome.PAUSED if job.status == JobStatus.PAUSED.value else ChunkOutcome.SKIPPED
            report.detail = f"job is {job.status}"
            return report

        if exhausted:
            return self._finish_input(job, report)
        return self._continue(job, report)

    def _process_item(self, workload: Workload, job: JobRecord, item: Any) -> ItemResult:
        try:
            return workload.process_item(job, item, self.store)
        except (FatalWorkloadError, SQLAlchemyError):
            raise
        except ItemError as e:
            logger.warning(f"Job {job.id}: item failed: {e}")
            return ItemResult(outcome="failed", detail=str(e))
        except Exception as e:
            logger.warning(f"Job {job.id}: item failed unexpectedly: {e}", exc_info=True)
            return ItemResult(outcome="failed", detail=str(e))

    def _finish_input(self, job: JobRecord, report: ChunkReport) -> ChunkReport:
        job_id = job.id
        if self.store.count_active_children(job_id):
            try:
                self.dispatcher.enqueue(job_id, delay_seconds=self.config.child_poll_interval_seconds)
            except redis.RedisError as e:
                logger.error(f"Job {job_id}: could not schedule child poll: {e}")
            report.outcome = ChunkOutcome.WAITING
            return report
        try:
            self.store.complete(job_id)
        except InvalidTransition as e:
            logger.info(f"Job {job_id}: not completed: {e}")
            report.detail = str(e)
            return report
        report.outcome = ChunkOutcome.COMPLETED
        return report

    def _continue(self, job: JobRecord, report: ChunkReport) -> ChunkReport:
        regime = self.backpressure.evaluate()
        if regime == Regime.BACKPRESSURE_ACTIVE:
            return self._defer(job.id, report)
        if dispatch_job(self.store, self.dispatcher, self.backpressure, job, source="continuation", regime=regime):
            report.outcome = ChunkOutcome.CONTINUED
        else:
            report.outcome = ChunkOutcome.IDLE
        return report

    def _defer(self, job_id: str, report: ChunkReport) -> ChunkReport:
        try:
            self.store.pause(job_id, PauseReason.BACKPRESSURE)
            logger.warning(f"Job {job_id}: paused by backpressure")
        except InvalidTransition as e:
            logger.info(f"Job {job_id}: not paused for backpressure: {e}")
        report.outcome = ChunkOutcome.DEFERRED
        return report

    def _finish_cancel(self, job_id: str, report: ChunkReport, run_id: Optional[str] = None) -> ChunkReport:
        try:
            self.store.cancel(job_id)
        except InvalidTransition as e:
            # children still winding down; the sweep finalizes the cancellation
            logger.info(f"Job {job_id}: cancellation waits: {e}")
            if run_id:
                self.store.release_run(job_id, run_id)
            report.outcome = ChunkOutcome.WAITING
            return report
        logger.info(f"Job {job_id}: cancelled")
        report.outcome = ChunkOutcome.CANCELLED
        return report

    def _fail(self, job_id: str, message: str, report: ChunkReport, run_id: Optional[str] = None) -> ChunkReport:
        logger.error(f"Job {job_id}: fatal error: {message}")
        self._record_health(ok=False)
        try:
            job = self.store.fail(job_id, message)
        except InvalidTransition as e:
            logger.info(f"Job {job_id}: not failed: {e}")
            if run_id:
                self.store.release_run(job_id, run_id)
            report.detail = str(e)
            return report
        # children still winding down; the sweep finalizes the failure
        report.outcome = ChunkOutcome.ERROR if job.status == JobStatus.ERROR.value else ChunkOutcome.WAITING
        report.detail = message
        return report

    def _record_health(self, ok: bool):
        try:
            if ok:
                self.backpressure.record_request()
            else:
                self.backpressure.record_error()
        except redis.RedisError as e:
            logger.warning(f"Could not record chunk health: {e}")


def process_chunk(job_id: str) -> dict:
    """RQ entry point: run one chunk of ``job_id``"""
    start_time = time.time()
    db = SessionLocal()
    try:
        store = JobStore(db, notifier=get_publisher())
        executor = ChunkExecutor(store, get_dispatcher(), get_backpressure())
        report = executor.run(job_id)
    finally:
        db.close()

    kind = report.kind or "unknown"
    chunk_count.labels(kind=kind, outcome=report.outcome.value).inc()
    for outcome, count in report.item_outcomes.items():
        item_count.labels(kind=kind, outcome=outcome).inc(count)
    if report.items:
        chunk_duration.labels(kind=kind).observe(report.duration)
    if report.outcome in (ChunkOutcome.COMPLETED, ChunkOutcome.CANCELLED, ChunkOutcome.ERROR):
        job_count.labels(kind=kind, status=report.outcome.value).inc()

    profiler.info(
        f"Job {job_id}: chunk {report.outcome.value}, {report.items} items "
        f"({report.processed_units}/{report.total_units}) in {time.time() - start_time:.2f}s"
    )
    return report.to_dict()
