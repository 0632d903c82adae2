"""Chunk dispatch: RQ enqueueing and the periodic dispatch sweep.

A chunk is only enqueued after ``JobStore.claim_dispatch`` wins the
optimistic status guard, so two dispatch paths racing for one job never
both enqueue it. The sweep is the safety net for jobs whose
self-continuation never fired.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import redis
from rq import Queue

from backpressure import BackpressureController, Regime
from config import settings
from exceptions import InvalidTransition
from job_store import JobStore
from models import JobRecord, JobStatus
from monitoring import dispatch_count

logger = logging.getLogger(__name__)

CHUNK_TASK = "chunk_executor.process_chunk"


class ChunkDispatcher:
    """Enqueues one chunk run per call on the RQ queue"""

    def __init__(self, queue: Queue, config=settings):
        self.queue = queue
        self.config = config

    def enqueue(self, job_id: str, delay_seconds: int = 0) -> str:
        options = {
            "job_timeout": self.config.chunk_hard_timeout_seconds,
            "result_ttl": 3600,
            "failure_ttl": 86400 * 7,
            "description": f"chunk for job {job_id}",
        }
        if delay_seconds:
            rq_job = self.queue.enqueue_in(timedelta(seconds=delay_seconds), CHUNK_TASK, job_id, **options)
        else:
            rq_job = self.queue.enqueue(CHUNK_TASK, job_id, **options)
        logger.info(f"Job {job_id}: chunk enqueued as {rq_job.id} (delay {delay_seconds}s)")
        return rq_job.id


def dispatch_job(
    store: JobStore,
    dispatcher: ChunkDispatcher,
    backpressure: BackpressureController,
    job: JobRecord,
    source: str = "immediate",
    regime: Optional[Regime] = None,
    enforce_cap: bool = True,
    config=settings,
) -> bool:
    """Claim a job and enqueue its next chunk.

    Returns False, leaving the job for a later sweep, when backpressure
    is active, the concurrency cap is reached, another dispatcher won the
    claim or the queue is unreachable.
    """
    job_id = job.id
    regime = regime or backpressure.evaluate()
    if regime == Regime.BACKPRESSURE_ACTIVE:
        logger.info(f"Job {job_id}: dispatch deferred, backpressure active")
        return False

    if enforce_cap and store.count_active_runs(claim_window_start(config)) >= backpressure.concurrency_cap(regime):
        logger.info(f"Job {job_id}: dispatch deferred, concurrency cap reached ({regime.value})")
        return False

    if not store.claim_dispatch(job):
        return False

    try:
        dispatcher.enqueue(job_id)
    except redis.RedisError as e:
        # job stays processing and idle; the sweep re-dispatches it after the grace period
        logger.error(f"Job {job_id}: enqueue failed: {e}")
        store.release_claim(job_id)
        backpressure_error(backpressure)
        return False

    dispatch_count.labels(source=source).inc()
    return True


def claim_window_start(config=settings, now: Optional[datetime] = None) -> datetime:
    """Claims made after this point count against the concurrency cap"""
    now = now or datetime.utcnow()
    return now - timedelta(seconds=config.continuation_grace_seconds)


def backpressure_error(backpressure: BackpressureController):
    try:
        backpressure.record_error()
    except redis.RedisError as e:
        logger.warning(f"Could not record error for backpressure: {e}")


@dataclass
class SweepReport:
    regime: str
    dispatched: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: int = 0
    suspended: bool = False

    def to_dict(self) -> dict:
        return {
            "regime": self.regime,
            "dispatched": self.dispatched,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "skipped": self.skipped,
            "suspended": self.suspended,
        }


class DispatchSweep:
    """Time-triggered scan for dispatchable jobs"""

    def __init__(self, store: JobStore, dispatcher: ChunkDispatcher, backpressure: BackpressureController, config=settings):
        self.store = store
        self.dispatcher = dispatcher
        self.backpressure = backpressure
        self.config = config

    def finalize_failures(self) -> List[str]:
        """Fail parents whose last active child has finished"""
        failed = []
        for job in self.store.pending_failures():
            if self.store.count_active_children(job.id):
                continue
            try:
                self.store.fail(job.id, job.pending_error)
                failed.append(job.id)
            except InvalidTransition as e:
                logger.info(f"Job {job.id}: failure not finalized: {e}")
        return failed

    def finalize_cancellations(self) -> List[str]:
        cancelled = []
        for job in self.store.idle_cancellations():
            try:
                self.store.cancel(job.id)
                cancelled.append(job.id)
            except InvalidTransition as e:
                logger.info(f"Job {job.id}: cancellation waits: {e}")
        return cancelled

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.utcnow()
        failed = self.finalize_failures()
        cancelled = self.finalize_cancellations()

        regime = self.backpressure.evaluate()
        report = SweepReport(regime=regime.value, cancelled=cancelled, failed=failed)
        if regime == Regime.BACKPRESSURE_ACTIVE:
            logger.warning("Dispatch sweep suspended: backpressure active")
            report.suspended = True
            return report

        claimed_since = claim_window_start(self.config, now)
        slots = self.backpressure.concurrency_cap(regime) - self.store.count_active_runs(claimed_since)
        if slots <= 0:
            logger.info(f"Dispatch sweep: no free slots ({regime.value})")
            return report

        candidates = self.store.dispatchable(limit=min(self.config.sweep_batch_size, slots), idle_before=claimed_since)
        for job in candidates:
            if job.status == JobStatus.PAUSED.value:
                try:
                    job = self.store.resume(job.id)
                except InvalidTransition as e:
                    logger.info(f"Job {job.id}: not resumed: {e}")
                    report.skipped += 1
                    continue
            if dispatch_job(self.store, self.dispatcher, self.backpressure, job,
                            source="sweep", regime=regime, enforce_cap=False, config=self.config):
                report.dispatched.append(job.id)
            else:
                report.skipped += 1

        logger.info(
            f"Dispatch sweep: {len(report.dispatched)} dispatched, {report.skipped} skipped, "
            f"{len(report.cancelled)} cancellations and {len(report.failed)} failures finalized ({regime.value})"
        )
        return report


_dispatcher: Optional[ChunkDispatcher] = None


def get_dispatcher() -> ChunkDispatcher:
    """Get or create the process-wide dispatcher"""
    global _dispatcher
    if _dispatcher is None:
        redis_conn = redis.from_url(settings.redis_url)
        queue = Queue(settings.queue_name, connection=redis_conn, default_timeout=settings.chunk_hard_timeout_seconds)
        _dispatcher = ChunkDispatcher(queue)
    return _dispatcher
