"""Stalled-job detection and recovery.

A job is stalled when it is in flight (processing, or paused by
backpressure) and its ``last_activity_at`` is older than the threshold
for its kind. Recovery walks a ranked ladder: resume from the persisted
cursor, then restart from the checkpoint with a smaller chunk, then fail.
Every attempt leaves a row in ``job_recovery_log``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from backpressure import BackpressureController
from config import settings
from dispatcher import ChunkDispatcher, dispatch_job
from exceptions import InvalidTransition, SystemBusy
from job_store import JobStore
from models import JobRecord, JobStatus, PauseReason, RecoveryAttempt
from monitoring import recovery_count, stalled_jobs

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = {JobStatus.PROCESSING.value, JobStatus.PAUSED.value, JobStatus.ERROR.value}


class RecoveryStrategy(str, Enum):
    RESUME = "resume"
    RESTART_CHECKPOINT = "restart-checkpoint"
    FAIL = "fail"


@dataclass
class RecoveryResult:
    job_id: str
    attempt: int
    strategy: RecoveryStrategy
    success: bool
    dispatched: bool = False
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "attempt": self.attempt,
            "strategy": self.strategy.value,
            "success": self.success,
            "dispatched": self.dispatched,
            "error_message": self.error_message,
            "details": self.details,
        }


class StalledJobDetector:
    def __init__(self, store: JobStore, config=settings, backpressure: Optional[BackpressureController] = None):
        self.store = store
        self.config = config
        self.backpressure = backpressure

    def threshold_for(self, kind: str) -> timedelta:
        return timedelta(minutes=self.config.stall_threshold_minutes(kind))

    def stalled_for(self, job: JobRecord, now: datetime) -> timedelta:
        return now - (job.last_activity_at or job.created_at)

    def is_stalled(self, job: JobRecord, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.stalled_for(job, now) > self.threshold_for(job.kind)

    def find_stalled(self, now: Optional[datetime] = None) -> List[JobRecord]:
        now = now or datetime.utcnow()
        # nothing can be stalled before the smallest threshold has elapsed
        smallest = min([self.config.default_stall_threshold_minutes, *self.config.stall_thresholds_minutes.values()])
        candidates = self.store.in_flight(last_activity_before=now - timedelta(minutes=smallest))
        if self.backpressure is not None and self.backpressure.is_active():
            # still waiting on the cooldown, not stalled
            candidates = [job for job in candidates if job.pause_reason != PauseReason.BACKPRESSURE.value]
        return [job for job in candidates if self.is_stalled(job, now)]


class RecoveryEngine:
    def __init__(
        self,
        store: JobStore,
        dispatcher: ChunkDispatcher,
        backpressure: BackpressureController,
        config=settings,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.backpressure = backpressure
        self.config = config
        self.detector = StalledJobDetector(store, config, backpressure)

    def choose_strategy(self, previous: Sequence[RecoveryAttempt]) -> RecoveryStrategy:
        if len(previous) >= self.config.max_recovery_attempts:
            return RecoveryStrategy.FAIL
        resumes = sum(1 for a in previous if a.strategy == RecoveryStrategy.RESUME.value)
        restarts = sum(1 for a in previous if a.strategy == RecoveryStrategy.RESTART_CHECKPOINT.value)
        if resumes < self.config.resume_attempts_before_restart:
            return RecoveryStrategy.RESUME
        if not restarts:
            return RecoveryStrategy.RESTART_CHECKPOINT
        return RecoveryStrategy.FAIL

    def recover(self, job: JobRecord, now: Optional[datetime] = None) -> RecoveryResult:
        """Apply the next strategy on the ladder to one job.

        Raises InvalidTransition if the job is not in a recoverable status
        or changed since it was read, and SystemBusy while a backpressure
        cooldown is running. Neither writes a recovery log row.
        """
        now = now or datetime.utcnow()
        job_id = job.id
        if job.status not in RECOVERABLE_STATUSES:
            raise InvalidTransition(job_id, job.status, JobStatus.PROCESSING.value)
        if self.backpressure.is_active():
            bp_status = self.backpressure.status()
            raise SystemBusy(bp_status.trigger_reason, retry_after=bp_status.cooldown_remaining_seconds)

        previous = self.store.recovery_log(job_id)
        attempt = len(previous) + 1
        strategy = self.choose_strategy(previous)
        details = {
            "status": job.status,
            "cursor": job.cursor or {},
            "processed_units": job.processed_units,
            "chunk_size": job.chunk_size,
            "stalled_seconds": int(self.detector.stalled_for(job, now).total_seconds()),
        }
        logger.info(f"Job {job_id}: recovery attempt {attempt} using {strategy.value}")

        if strategy == RecoveryStrategy.FAIL:
            return self._fail(job, attempt, len(previous), details)

        chunk_size = None
        if strategy == RecoveryStrategy.RESTART_CHECKPOINT:
            chunk_size = max(1, job.chunk_size // 2)
            details["new_chunk_size"] = chunk_size

        if not self.store.reclaim(job, chunk_size=chunk_size):
            current = self.store.get(job_id)
            raise InvalidTransition(job_id, current.status if current else None, JobStatus.PROCESSING.value)

        fresh = self.store.require(job_id)
        dispatched = dispatch_job(self.store, self.dispatcher, self.backpressure, fresh, source="recovery")
        details["dispatched"] = dispatched
        self.store.record_recovery(job_id, attempt, strategy.value, True, details=details)
        recovery_count.labels(strategy=strategy.value, success="true").inc()
        if not dispatched:
            logger.info(f"Job {job_id}: reclaimed, dispatch left to the sweep")
        return RecoveryResult(job_id, attempt, strategy, True, dispatched=dispatched, details=details)

    def _fail(self, job: JobRecord, attempt: int, previous: int, details: dict) -> RecoveryResult:
        job_id = job.id
        message = f"Job stalled and was not recovered after {previous} recovery attempts"
        try:
            failed = self.store.fail(job_id, message)
        except InvalidTransition as e:
            self.store.record_recovery(job_id, attempt, RecoveryStrategy.FAIL.value, False,
                                       error_message=str(e), details=details)
            recovery_count.labels(strategy=RecoveryStrategy.FAIL.value, success="false").inc()
            raise
        details["status_after"] = failed.status
        logger.error(f"Job {job_id}: {message}")
        self.store.record_recovery(job_id, attempt, RecoveryStrategy.FAIL.value, True,
                                   error_message=message, details=details)
        recovery_count.labels(strategy=RecoveryStrategy.FAIL.value, success="true").inc()
        return RecoveryResult(job_id, attempt, RecoveryStrategy.FAIL, True, error_message=message, details=details)

    def run(self, now: Optional[datetime] = None) -> List[RecoveryResult]:
        """One audit pass: find stalled jobs and recover each"""
        now = now or datetime.utcnow()
        stalled = self.detector.find_stalled(now)
        stalled_jobs.set(len(stalled))
        if stalled:
            logger.warning(f"Found {len(stalled)} stalled jobs")

        results = []
        for job in stalled:
            try:
                results.append(self.recover(job, now))
            except InvalidTransition as e:
                logger.info(f"Job {job.id}: recovery skipped: {e}")
            except SystemBusy as e:
                logger.warning(f"Recovery pass stopped: {e}")
                break
        return results
