from datetime import datetime
from types import SimpleNamespace
from unittest.mock import Mock

import redis

from models import JobStatus
from notifications import JobEvent, JobEventPublisher, JobEventSubscriber


def job_view(job_id="job-1", status="processing", processed=10, version=2, cancelling=False):
    return SimpleNamespace(
        id=job_id, kind="lexicon-seed", status=status, processed_units=processed,
        total_units=100, is_cancelling=cancelling, error_message=None, version=version
    )


def event(job_id="job-1", version=1):
    return JobEvent(
        job_id=job_id, kind="lexicon-seed", status="processing", processed_units=0,
        total_units=100, version=version, timestamp=datetime.utcnow()
    )


def next_event(subscriber, attempts=10):
    for _ in range(attempts):
        received = subscriber.get_event(timeout=0.1)
        if received is not None:
            return received
    return None


class TestPublisher:

    def test_publish_reaches_subscriber(self, fake_redis):
        subscriber = JobEventSubscriber(fake_redis, channel="events")
        publisher = JobEventPublisher(fake_redis, channel="events")

        assert publisher.publish(job_view(processed=40))

        received = next_event(subscriber)
        assert received.job_id == "job-1"
        assert received.processed_units == 40
        assert received.total_units == 100
        subscriber.close()

    def test_duplicate_notifications_suppressed(self, fake_redis):
        publisher = JobEventPublisher(fake_redis, channel="events", dedup_seconds=30)

        assert publisher.publish(job_view(version=2))
        assert not publisher.publish(job_view(version=3))
        assert publisher.publish(job_view(processed=20, version=4))
        assert publisher.publish(job_view(processed=20, version=5, cancelling=True))

    def test_dedup_disabled(self, fake_redis):
        publisher = JobEventPublisher(fake_redis, channel="events", dedup_seconds=0)
        assert publisher.publish(job_view())
        assert publisher.publish(job_view())

    def test_redis_failure_is_swallowed(self):
        broken = Mock()
        broken.set.side_effect = redis.ConnectionError("connection refused")
        publisher = JobEventPublisher(broken, channel="events")

        assert publisher.publish(job_view()) is False

    def test_store_mutations_are_published(self, fake_redis, store, make_job):
        subscriber = JobEventSubscriber(fake_redis, channel="test-events")

        job = make_job()
        created = next_event(subscriber)
        assert created.job_id == job.id
        assert created.status == JobStatus.PENDING.value

        store.request_cancel(job.id)
        cancelled = next_event(subscriber)
        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.version > created.version
        subscriber.close()


class TestSubscriberOrdering:

    def test_older_versions_dropped_per_job(self, fake_redis):
        subscriber = JobEventSubscriber(fake_redis, channel="events")

        assert subscriber.accept(event(version=2))
        assert not subscriber.accept(event(version=1))
        assert not subscriber.accept(event(version=2))
        assert subscriber.accept(event(version=3))
        # ordering is only per job
        assert subscriber.accept(event(job_id="job-2", version=1))
        subscriber.close()

    def test_malformed_messages_dropped(self, fake_redis):
        subscriber = JobEventSubscriber(fake_redis, channel="events")
        fake_redis.publish("events", "not json")
        fake_redis.publish("events", event(version=1).model_dump_json())

        received = next_event(subscriber)
        assert received is not None and received.version == 1
        subscriber.close()
