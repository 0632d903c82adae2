import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text

from database import Base


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


# error is terminal unless a recovery or retry picks it up again
TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}
ACTIVE_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED}


class JobKind(str, enum.Enum):
    CORPUS_ANNOTATION = "corpus-annotation"
    ARTIST_ANNOTATION = "artist-annotation"
    DICTIONARY_IMPORT = "dictionary-import"
    LEXICON_SEED = "lexicon-seed"
    SCRAPE = "scrape"


class PauseReason(str, enum.Enum):
    USER = "user"
    BACKPRESSURE = "backpressure"


class JobRecord(Base):
    """
    One row per unit of work. A corpus-level job owns one artist-level
    child per artist through ``parent_id``.

    ``cursor`` is the only state needed to resume; ``chunks_processed``
    and ``active_run_id`` guard chunk commits so that a replayed chunk
    never counts twice.
    """
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True, index=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, default=JobStatus.PENDING.value, index=True)
    parent_id = Column(String, ForeignKey('jobs.id'), nullable=True, index=True)

    # what to do
    params = Column(JSON, nullable=False, default=dict)
    dedupe_key = Column(String, nullable=True, index=True)
    chunk_size = Column(Integer, nullable=False)

    # progress
    cursor = Column(JSON, nullable=False, default=dict)
    total_units = Column(Integer, nullable=False, default=0)
    processed_units = Column(Integer, nullable=False, default=0)
    chunks_processed = Column(Integer, nullable=False, default=0)
    metrics = Column(JSON, nullable=False, default=dict)

    # control
    is_cancelling = Column(Boolean, nullable=False, default=False)
    pause_reason = Column(String, nullable=True)
    active_run_id = Column(String, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)  # claimed and enqueued, run not started yet
    pending_error = Column(Text, nullable=True)  # failure waiting on active children
    version = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # lifecycle
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow, index=True)
    client_ip = Column(String, nullable=True)

    @property
    def progress(self) -> int:
        if not self.total_units:
            return 100 if self.status == JobStatus.COMPLETED.value else 0
        return int(self.processed_units * 100 / self.total_units)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "parent_id": self.parent_id,
            "dedupe_key": self.dedupe_key,
            "chunk_size": self.chunk_size,
            "cursor": self.cursor or {},
            "total_units": self.total_units,
            "processed_units": self.processed_units,
            "progress": self.progress,
            "chunks_processed": self.chunks_processed,
            "metrics": self.metrics or {},
            "is_cancelling": self.is_cancelling,
            "pause_reason": self.pause_reason,
            "error_message": self.error_message,
            "pending_error": self.pending_error,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dispatched_at": self.dispatched_at,
            "last_activity_at": self.last_activity_at,
        }


class RecoveryAttempt(Base):
    """Immutable audit row, one per recovery attempt on a stalled job."""
    __tablename__ = 'job_recovery_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey('jobs.id'), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)
    strategy = Column(String, nullable=False)  # resume, restart-checkpoint, fail
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "attempt": self.attempt,
            "strategy": self.strategy,
            "success": self.success,
            "error_message": self.error_message,
            "details": self.details or {},
            "created_at": self.created_at,
        }
