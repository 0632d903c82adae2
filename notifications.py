"""Job event fan-out over Redis pub/sub.

Best-effort: publishing never fails the caller and the Job Store stays
authoritative, so clients can always fall back to polling.
"""

import logging
from datetime import datetime
from typing import Dict, Iterator, Optional

import redis
from pydantic import BaseModel, ValidationError

from config import settings

logger = logging.getLogger(__name__)


class JobEvent(BaseModel):
    job_id: str
    kind: str
    status: str
    processed_units: int
    total_units: int
    is_cancelling: bool = False
    error_message: Optional[str] = None
    version: int
    timestamp: datetime

    @classmethod
    def from_job(cls, job) -> "JobEvent":
        return cls(
            job_id=job.id,
            kind=job.kind,
            status=job.status,
            processed_units=job.processed_units or 0,
            total_units=job.total_units or 0,
            is_cancelling=bool(job.is_cancelling),
            error_message=job.error_message,
            version=job.version or 0,
            timestamp=datetime.utcnow(),
        )


class JobEventPublisher:
    """Publishes one event per job mutation.

    Identical notifications for the same (job id, status) within the
    dedup window are suppressed.
    """

    def __init__(self, redis_conn: redis.Redis, channel: Optional[str] = None, dedup_seconds: Optional[int] = None):
        self.redis = redis_conn
        self.channel = channel or settings.events_channel
        self.dedup_seconds = dedup_seconds if dedup_seconds is not None else settings.notification_dedup_seconds

    def _dedup_key(self, event: JobEvent) -> str:
        return (
            f"{self.channel}:dedup:{event.job_id}:{event.status}:"
            f"{event.processed_units}:{int(event.is_cancelling)}"
        )

    def publish(self, job) -> bool:
        event = JobEvent.from_job(job)
        try:
            if self.dedup_seconds and not self.redis.set(self._dedup_key(event), event.version, nx=True, ex=self.dedup_seconds):
                logger.debug(f"Job {event.job_id}: duplicate {event.status} event suppressed")
                return False
            self.redis.publish(self.channel, event.model_dump_json())
            return True
        except redis.RedisError as e:
            logger.warning(f"Job {event.job_id}: could not publish {event.status} event: {e}")
            return False


class JobEventSubscriber:
    """Consumes the event channel, dropping events that arrive out of order for a job"""

    def __init__(self, redis_conn: redis.Redis, channel: Optional[str] = None):
        self.channel = channel or settings.events_channel
        self.pubsub = redis_conn.pubsub(ignore_subscribe_messages=True)
        self.pubsub.subscribe(self.channel)
        self._last_version: Dict[str, int] = {}

    def accept(self, event: JobEvent) -> bool:
        last = self._last_version.get(event.job_id, -1)
        if event.version <= last:
            return False
        self._last_version[event.job_id] = event.version
        return True

    def _decode(self, message) -> Optional[JobEvent]:
        if not message or message.get("type") != "message":
            return None
        data = message["data"]
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = JobEvent.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed job event: {e}")
            return None
        return event if self.accept(event) else None

    def get_event(self, timeout: float = 1.0) -> Optional[JobEvent]:
        return self._decode(self.pubsub.get_message(timeout=timeout))

    def listen(self) -> Iterator[JobEvent]:
        for message in self.pubsub.listen():
            event = self._decode(message)
            if event is not None:
                yield event

    def close(self):
        self.pubsub.close()


def open_subscriber() -> JobEventSubscriber:
    """One subscription per event-stream client"""
    return JobEventSubscriber(redis.from_url(settings.redis_url))


_publisher: Optional[JobEventPublisher] = None


def get_publisher() -> JobEventPublisher:
    """Get or create the process-wide publisher"""
    global _publisher
    if _publisher is None:
        _publisher = JobEventPublisher(redis.from_url(settings.redis_url))
    return _publisher
