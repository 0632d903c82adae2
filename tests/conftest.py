"""Pytest configuration and fixtures for the job orchestration tests"""

import os

# Settings are read at import time
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("LOG_FILE", os.devnull)

import fakeredis
import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backpressure import BackpressureController
from chunk_executor import ChunkExecutor
from config import settings
from database import Base
from job_store import JobStore
from notifications import JobEventPublisher
from workloads import ProcessorRegistry, build_workloads


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeProbe:
    """Store probe with a settable latency; raises ``error`` when set"""

    def __init__(self, latency_ms: float = 5.0):
        self.latency_ms = latency_ms
        self.error = None
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.latency_ms


class RecordingDispatcher:
    """Stands in for the RQ-backed dispatcher; records every enqueue"""

    def __init__(self):
        self.enqueued = []
        self.fail = False

    def enqueue(self, job_id: str, delay_seconds: int = 0) -> str:
        if self.fail:
            raise redis.ConnectionError("queue unreachable")
        self.enqueued.append((job_id, delay_seconds))
        return f"rq-{len(self.enqueued)}"

    def job_ids(self):
        return [job_id for job_id, _ in self.enqueued]


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test"""
    # StaticPool keeps every session on the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis()


@pytest.fixture
def publisher(fake_redis):
    return JobEventPublisher(fake_redis, channel="test-events")


@pytest.fixture
def store(db_session, publisher):
    return JobStore(db_session, notifier=publisher)


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def chunk_clock():
    return FakeClock(0.0)


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def backpressure(fake_redis, probe, clock):
    return BackpressureController(fake_redis, probe=probe, clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def registry():
    registry = ProcessorRegistry(import_paths={})
    return registry


@pytest.fixture
def workloads(registry):
    return build_workloads(registry)


@pytest.fixture
def make_executor(store, dispatcher, backpressure, workloads, chunk_clock):
    def _make(**overrides):
        config = settings.model_copy(update=overrides) if overrides else settings
        return ChunkExecutor(
            store, dispatcher, backpressure,
            workloads=workloads, config=config, clock=chunk_clock
        )
    return _make


@pytest.fixture
def executor(make_executor):
    return make_executor()


@pytest.fixture
def drain(executor, dispatcher):
    """Run queued chunks in order until the queue is empty"""
    def _drain(max_runs: int = 50):
        reports = []
        while dispatcher.enqueued and len(reports) < max_runs:
            job_id, _ = dispatcher.enqueued.pop(0)
            reports.append(executor.run(job_id))
        return reports
    return _drain


@pytest.fixture
def make_job(store, workloads):
    def _make(kind="lexicon-seed", params=None, chunk_size=100, dedupe_key=None, parent_id=None):
        workload = workloads[kind]
        if params is None:
            params = {"words": [f"word{i}" for i in range(250)]}
        return store.create(
            kind=kind,
            params=params,
            chunk_size=chunk_size,
            total_units=workload.count_units(params),
            cursor=workload.initial_cursor(),
            parent_id=parent_id,
            dedupe_key=dedupe_key,
        )
    return _make


@pytest.fixture
def seen_words(registry):
    """Registers a lexicon-seed processor that records every word it sees"""
    seen = []

    def seed_word(word):
        seen.append(word)

    registry.register("lexicon-seed", seed_word)
    return seen
