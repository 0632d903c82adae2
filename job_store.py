"""Job Store: the single source of truth for job state.

Every status change is one guarded UPDATE (``WHERE status IN expected``) so
that two dispatch paths racing for the same job cannot both win. Chunk
commits are guarded by the run that owns the job and by the committed
chunk sequence number, which makes replaying a chunk a no-op.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from exceptions import DuplicateJob, InvalidTransition, JobNotFound
from models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
    PauseReason,
    RecoveryAttempt,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.PAUSED: {JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.ERROR},
    JobStatus.ERROR: {JobStatus.PROCESSING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


def merge_metrics(base: Optional[Dict[str, int]], delta: Dict[str, int]) -> Dict[str, int]:
    merged = dict(base or {})
    for key, value in delta.items():
        merged[key] = merged.get(key, 0) + value
    return merged


class JobStore:
    """Reads and guarded writes against the jobs tables.

    ``notifier`` is any object with ``publish(job)``; it is called after
    every committed mutation.
    """

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.notifier = notifier

    # ------------------------------------------------------------------ reads

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self.db.query(JobRecord).filter(JobRecord.id == job_id).first()

    def require(self, job_id: str) -> JobRecord:
        job = self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        parent_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[JobRecord]:
        query = self.db.query(JobRecord)
        if kind:
            query = query.filter(JobRecord.kind == kind)
        if status:
            query = query.filter(JobRecord.status == status)
        if parent_id:
            query = query.filter(JobRecord.parent_id == parent_id)
        return query.order_by(JobRecord.created_at.desc()).offset(skip).limit(limit).all()

    def children(self, parent_id: str, active_only: bool = False) -> List[JobRecord]:
        query = self.db.query(JobRecord).filter(JobRecord.parent_id == parent_id)
        if active_only:
            query = query.filter(JobRecord.status.in_(_ACTIVE_VALUES))
        return query.order_by(JobRecord.created_at.asc()).all()

    def count_active_children(self, parent_id: str) -> int:
        return self.db.query(JobRecord).filter(
            JobRecord.parent_id == parent_id,
            JobRecord.status.in_(_ACTIVE_VALUES)
        ).count()

    def find_active_duplicate(self, kind: str, dedupe_key: str) -> Optional[JobRecord]:
        return self.db.query(JobRecord).filter(
            JobRecord.kind == kind,
            JobRecord.dedupe_key == dedupe_key,
            JobRecord.status.in_(_ACTIVE_VALUES)
        ).first()

    def count_active_runs(self, claimed_since: Optional[datetime] = None) -> int:
        """Jobs with a chunk in flight, plus jobs claimed and enqueued since ``claimed_since``

        A claim whose run never started stops counting once it is older
        than ``claimed_since``.
        """
        in_flight = JobRecord.active_run_id.isnot(None)
        if claimed_since is not None:
            in_flight = or_(in_flight, JobRecord.dispatched_at >= claimed_since)
        return self.db.query(JobRecord).filter(
            JobRecord.status == JobStatus.PROCESSING.value,
            in_flight
        ).count()

    def dispatchable(self, limit: int, idle_before: datetime) -> List[JobRecord]:
        """Oldest-first jobs the sweep may (re)dispatch.

        Covers pending jobs, processing jobs idle between chunks whose
        continuation never fired, and jobs paused by backpressure.
        """
        return self.db.query(JobRecord).filter(
            JobRecord.is_cancelling == False,  # noqa: E712
            JobRecord.pending_error.is_(None),
            or_(
                JobRecord.status == JobStatus.PENDING.value,
                and_(
                    JobRecord.status == JobStatus.PROCESSING.value,
                    JobRecord.active_run_id.is_(None),
                    JobRecord.last_activity_at < idle_before,
                ),
                and_(
                    JobRecord.status == JobStatus.PAUSED.value,
                    JobRecord.pause_reason == PauseReason.BACKPRESSURE.value,
                ),
            )
        ).order_by(JobRecord.created_at.asc()).limit(limit).all()

    def idle_cancellations(self) -> List[JobRecord]:
        """Jobs flagged for cancellation with no chunk in flight"""
        return self.db.query(JobRecord).filter(
            JobRecord.is_cancelling == True,  # noqa: E712
            JobRecord.status.in_([JobStatus.PROCESSING.value, JobStatus.PAUSED.value]),
            JobRecord.active_run_id.is_(None)
        ).all()

    def in_flight(self, last_activity_before: Optional[datetime] = None) -> List[JobRecord]:
        """Processing jobs and jobs paused by backpressure, candidates for stall audits"""
        query = self.db.query(JobRecord).filter(
            JobRecord.pending_error.is_(None),
            or_(
                JobRecord.status == JobStatus.PROCESSING.value,
                and_(
                    JobRecord.status == JobStatus.PAUSED.value,
                    JobRecord.pause_reason == PauseReason.BACKPRESSURE.value,
                ),
            )
        )
        if last_activity_before is not None:
            query = query.filter(JobRecord.last_activity_at < last_activity_before)
        return query.order_by(JobRecord.last_activity_at.asc()).all()

    def pending_failures(self) -> List[JobRecord]:
        """Failed parents waiting for their children to finish"""
        return self.db.query(JobRecord).filter(
            JobRecord.pending_error.isnot(None),
            JobRecord.status.in_([JobStatus.PROCESSING.value, JobStatus.PAUSED.value]),
            JobRecord.active_run_id.is_(None)
        ).all()

    def find_child(self, parent_id: str, dedupe_key: str) -> Optional[JobRecord]:
        """Child of ``parent_id`` with ``dedupe_key`` in any status"""
        return self.db.query(JobRecord).filter(
            JobRecord.parent_id == parent_id,
            JobRecord.dedupe_key == dedupe_key
        ).order_by(JobRecord.created_at.asc()).first()

    def recovery_log(self, job_id: str) -> List[RecoveryAttempt]:
        return self.db.query(RecoveryAttempt).filter(
            RecoveryAttempt.job_id == job_id
        ).order_by(RecoveryAttempt.attempt.asc()).all()

    # ----------------------------------------------------------------- writes

    def create(
        self,
        kind: str,
        params: Dict[str, Any],
        chunk_size: int,
        total_units: int,
        cursor: Dict[str, Any],
        parent_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> JobRecord:
        if dedupe_key:
            existing = self.find_active_duplicate(kind, dedupe_key)
            if existing:
                raise DuplicateJob(existing.id, existing.status)

        now = datetime.utcnow()
        job = JobRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            status=JobStatus.PENDING.value,
            parent_id=parent_id,
            params=params,
            dedupe_key=dedupe_key,
            chunk_size=chunk_size,
            cursor=cursor,
            total_units=total_units,
            processed_units=0,
            chunks_processed=0,
            metrics={},
            is_cancelling=False,
            version=1,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            client_ip=client_ip,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info(f"Job {job.id} created ({kind}, {total_units} units, chunk size {chunk_size})")
        self._emit(job)
        return job

    def _guarded_update(self, job_id: str, criteria: list, values: Dict[str, Any]) -> bool:
        values = dict(values)
        values["version"] = JobRecord.version + 1
        values["updated_at"] = datetime.utcnow()
        try:
            count = self.db.query(JobRecord).filter(
                JobRecord.id == job_id, *criteria
            ).update(values, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return count == 1

    def transition(
        self,
        job_id: str,
        expected: Union[JobStatus, Iterable[JobStatus]],
        target: JobStatus,
        force: bool = False,
        **fields,
    ) -> JobRecord:
        """Move a job from one of ``expected`` to ``target`` atomically.

        Raises InvalidTransition when the move is not allowed by the state
        machine or when another writer changed the status first. A parent
        cannot become terminal while it has active children unless
        ``force`` is set.
        """
        expected = {JobStatus(expected)} if isinstance(expected, (str, JobStatus)) else set(expected)
        for status in expected:
            if not can_transition(status, target):
                raise InvalidTransition(job_id, status.value, target.value)

        if target in TERMINAL_STATUSES and not force and self.count_active_children(job_id):
            raise InvalidTransition(job_id, "active children", target.value)

        now = datetime.utcnow()
        values = dict(fields)
        values["status"] = target.value
        if target in TERMINAL_STATUSES:
            values["finished_at"] = now
            values["active_run_id"] = None
            values["pending_error"] = None
        if target != JobStatus.PROCESSING:
            values["dispatched_at"] = None
        if target == JobStatus.PROCESSING:
            values["finished_at"] = None
        if target != JobStatus.ERROR:
            values["error_message"] = None
        if target != JobStatus.PAUSED:
            values["pause_reason"] = None

        ok = self._guarded_update(job_id, [JobRecord.status.in_([s.value for s in expected])], values)
        if not ok:
            current = self.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            raise InvalidTransition(job_id, current.status, target.value)

        job = self.get(job_id)
        logger.info(f"Job {job_id} status updated to {target.value}")
        self._emit(job)
        return job

    def claim_dispatch(self, job: JobRecord) -> bool:
        """Arm a job for its next chunk; exactly one concurrent caller wins.

        Pending jobs move to processing. Idle processing jobs are re-armed
        guarded on the version the caller observed.
        """
        now = datetime.utcnow()
        if job.status == JobStatus.PENDING.value:
            criteria = [JobRecord.status == JobStatus.PENDING.value]
            values = {
                "status": JobStatus.PROCESSING.value,
                "started_at": func.coalesce(JobRecord.started_at, now),
                "last_activity_at": now,
                "dispatched_at": now,
            }
        elif job.status == JobStatus.PROCESSING.value:
            criteria = [
                JobRecord.status == JobStatus.PROCESSING.value,
                JobRecord.active_run_id.is_(None),
                JobRecord.version == job.version,
            ]
            values = {"last_activity_at": now, "dispatched_at": now}
        else:
            return False

        job_id = job.id
        if not self._guarded_update(job_id, criteria, values):
            logger.warning(f"Job {job_id} already claimed by another dispatcher")
            return False
        self._emit(self.get(job_id))
        return True

    def release_claim(self, job_id: str) -> bool:
        """Drop a dispatch claim whose chunk never reached the queue"""
        return self._guarded_update(
            job_id,
            [JobRecord.active_run_id.is_(None), JobRecord.dispatched_at.isnot(None)],
            {"dispatched_at": None},
        )

    def begin_run(self, job_id: str, run_id: str) -> Optional[JobRecord]:
        """Take ownership of the job for one chunk run"""
        now = datetime.utcnow()
        ok = self._guarded_update(
            job_id,
            [
                JobRecord.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                JobRecord.active_run_id.is_(None),
            ],
            {
                "status": JobStatus.PROCESSING.value,
                "active_run_id": run_id,
                "dispatched_at": None,
                "started_at": func.coalesce(JobRecord.started_at, now),
                "last_activity_at": now,
            },
        )
        if not ok:
            return None
        job = self.get(job_id)
        self._emit(job)
        return job

    def heartbeat(self, job_id: str, run_id: str) -> Optional[JobRecord]:
        """Refresh last activity for a long chunk; returns None if the run lost ownership"""
        ok = self._guarded_update(
            job_id,
            [JobRecord.active_run_id == run_id],
            {"last_activity_at": datetime.utcnow()},
        )
        return self.get(job_id) if ok else None

    def commit_chunk(
        self,
        job_id: str,
        run_id: str,
        expected_seq: int,
        cursor: Dict[str, Any],
        processed_units: int,
        metrics: Dict[str, int],
    ) -> bool:
        """Persist cursor and counters together and release the run.

        Fails (returns False, changes nothing) if the run no longer owns
        the job or the chunk sequence already moved past ``expected_seq``.
        """
        ok = self._guarded_update(
            job_id,
            [
                JobRecord.active_run_id == run_id,
                JobRecord.chunks_processed == expected_seq,
                JobRecord.processed_units <= processed_units,
            ],
            {
                "cursor": cursor,
                "processed_units": processed_units,
                "metrics": metrics,
                "chunks_processed": expected_seq + 1,
                "last_activity_at": datetime.utcnow(),
                "active_run_id": None,
            },
        )
        if ok:
            self._emit(self.get(job_id))
        return ok

    def release_run(self, job_id: str, run_id: str) -> bool:
        ok = self._guarded_update(job_id, [JobRecord.active_run_id == run_id], {"active_run_id": None})
        return ok

    def request_cancel(self, job_id: str, force: bool = False) -> JobRecord:
        """Cooperative cancellation, cascading to active children.

        Jobs without a chunk in flight (pending, paused) are cancelled
        right away; processing jobs are flagged and stop at their next
        checkpoint. ``force`` cancels immediately regardless.
        """
        job = self.require(job_id)
        if job.is_terminal:
            raise InvalidTransition(job_id, job.status, JobStatus.CANCELLED.value)

        for child in self.children(job_id, active_only=True):
            try:
                self.request_cancel(child.id, force=force)
            except InvalidTransition:
                logger.info(f"Child {child.id} of job {job_id} finished before cancellation")

        job = self.require(job_id)
        idle = job.status in (JobStatus.PENDING.value, JobStatus.PAUSED.value) or (
            job.status == JobStatus.PROCESSING.value and job.active_run_id is None
        )
        if force or (idle and not self.count_active_children(job_id)):
            return self.transition(job_id, JobStatus(job.status), JobStatus.CANCELLED, force=force, is_cancelling=True)

        ok = self._guarded_update(
            job_id,
            [JobRecord.status.in_(_ACTIVE_VALUES)],
            {"is_cancelling": True},
        )
        job = self.require(job_id)
        if not ok:
            raise InvalidTransition(job_id, job.status, JobStatus.CANCELLED.value)
        logger.info(f"Job {job_id} flagged for cancellation")
        self._emit(job)
        return job

    def pause(self, job_id: str, reason: PauseReason = PauseReason.USER) -> JobRecord:
        return self.transition(job_id, JobStatus.PROCESSING, JobStatus.PAUSED, pause_reason=reason.value)

    def resume(self, job_id: str) -> JobRecord:
        """Back to processing; a run still finishing its chunk keeps ownership"""
        return self.transition(job_id, JobStatus.PAUSED, JobStatus.PROCESSING, last_activity_at=datetime.utcnow())

    def retry(self, job_id: str) -> JobRecord:
        """Re-open an errored job from its last committed cursor"""
        return self.transition(job_id, JobStatus.ERROR, JobStatus.PROCESSING, last_activity_at=datetime.utcnow())

    def complete(self, job_id: str) -> JobRecord:
        return self.transition(job_id, JobStatus.PROCESSING, JobStatus.COMPLETED)

    def cancel(self, job_id: str) -> JobRecord:
        job = self.require(job_id)
        return self.transition(job_id, JobStatus(job.status), JobStatus.CANCELLED, is_cancelling=True)

    def fail(self, job_id: str, message: str) -> JobRecord:
        """Move to error once no child is active.

        Active children are asked to cancel first. While any of them is
        still winding down the parent keeps its status with
        ``pending_error`` set, takes no further chunk and is failed by the
        dispatch sweep when the last child finishes.
        """
        for child in self.children(job_id, active_only=True):
            try:
                self.request_cancel(child.id)
            except InvalidTransition:
                logger.info(f"Child {child.id} of job {job_id} finished before cancellation")

        if not self.count_active_children(job_id):
            return self.transition(
                job_id, [JobStatus.PROCESSING, JobStatus.PAUSED], JobStatus.ERROR, error_message=message
            )

        ok = self._guarded_update(
            job_id,
            [JobRecord.status.in_([JobStatus.PROCESSING.value, JobStatus.PAUSED.value])],
            {"pending_error": message, "active_run_id": None, "dispatched_at": None},
        )
        job = self.require(job_id)
        if not ok:
            raise InvalidTransition(job_id, job.status, JobStatus.ERROR.value)
        logger.warning(f"Job {job_id} failing, waiting for {self.count_active_children(job_id)} children: {message}")
        self._emit(job)
        return job

    def reclaim(self, job: JobRecord, chunk_size: Optional[int] = None) -> bool:
        """Take a stalled job back from whatever run abandoned it.

        Guarded on the version the caller observed, so a job that made
        progress since it was classified stalled is left alone.
        """
        values = {
            "status": JobStatus.PROCESSING.value,
            "active_run_id": None,
            "dispatched_at": None,
            "pause_reason": None,
            "error_message": None,
            "finished_at": None,
            "last_activity_at": datetime.utcnow(),
        }
        if chunk_size is not None:
            values["chunk_size"] = chunk_size
        job_id = job.id
        ok = self._guarded_update(
            job_id,
            [
                JobRecord.version == job.version,
                JobRecord.status.in_([
                    JobStatus.PROCESSING.value, JobStatus.PAUSED.value, JobStatus.ERROR.value
                ]),
            ],
            values,
        )
        if ok:
            self._emit(self.get(job_id))
        return ok

    def record_recovery(
        self,
        job_id: str,
        attempt: int,
        strategy: str,
        success: bool,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> RecoveryAttempt:
        entry = RecoveryAttempt(
            job_id=job_id,
            attempt=attempt,
            strategy=strategy,
            success=success,
            error_message=error_message,
            details=details or {},
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def _emit(self, job: Optional[JobRecord]):
        if self.notifier is None or job is None:
            return
        try:
            self.notifier.publish(job)
        except Exception as e:
            logger.warning(f"Job {job.id}: event publish failed: {e}")
