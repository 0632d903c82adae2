import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from main import app
from backpressure import get_backpressure
from config import settings
from database import get_db
from dispatcher import get_dispatcher
from models import JobStatus
from notifications import JobEvent, get_publisher, open_subscriber
from rate_limiter import limiter


class FakeSubscriber:
    def __init__(self, events):
        self.events = list(events)
        self.closed = False

    def get_event(self, timeout=1.0):
        return self.events.pop(0) if self.events else None

    def close(self):
        self.closed = True


def job_event(job_id, status="processing", version=1):
    return JobEvent(
        job_id=job_id, kind="lexicon-seed", status=status, processed_units=0,
        total_units=3, version=version, timestamp=datetime.utcnow()
    )


@pytest.fixture
def subscriber():
    return FakeSubscriber([job_event("job-1"), job_event("job-2"), job_event("job-1", "completed", 2)])


@pytest.fixture
def client(session_factory, publisher, dispatcher, backpressure, subscriber):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_backpressure] = lambda: backpressure
    app.dependency_overrides[open_subscriber] = lambda: subscriber
    limiter.reset()

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def api_headers():
    return {"access_token": settings.api_key}


def submit(client, api_headers, **body):
    body.setdefault("kind", "lexicon-seed")
    body.setdefault("params", {"words": ["flow", "bars", "verse"]})
    return client.post("/jobs", json=body, headers=api_headers)


def test_health_check(client):
    """Test basic health check"""
    response = client.get("/health/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_detailed_health_check(client):
    """Test detailed health check"""
    response = client.get("/health/detailed")
    assert response.status_code == 200
    data = response.json()
    assert data["checks"]["database"]["status"] == "healthy"
    assert data["checks"]["redis"]["status"] == "healthy"
    assert data["checks"]["backpressure"]["regime"] == "healthy"


def test_readiness_and_liveness(client):
    assert client.get("/health/ready").json() == {"status": "ready"}
    assert client.get("/health/live").json() == {"status": "alive"}


def test_create_job_without_auth(client):
    """Test job creation without authentication"""
    response = client.post("/jobs", json={"kind": "lexicon-seed", "params": {"words": ["a"]}})
    assert response.status_code == 401


def test_create_job_wrong_key(client):
    response = submit(client, {"access_token": "not-the-key"})
    assert response.status_code == 403


class TestCreateJob:

    def test_create_and_dispatch(self, client, api_headers, dispatcher):
        response = submit(client, api_headers, chunk_size=2)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JobStatus.PROCESSING.value
        assert data["system_busy"] is False
        assert dispatcher.job_ids() == [data["job_id"]]

        job = client.get(f"/jobs/{data['job_id']}", headers=api_headers).json()
        assert job["total_units"] == 3
        assert job["chunk_size"] == 2
        assert job["cursor"] == {"offset": 0}
        assert job["progress"] == 0

    def test_default_chunk_size(self, client, api_headers):
        job_id = submit(client, api_headers).json()["job_id"]
        assert client.get(f"/jobs/{job_id}", headers=api_headers).json()["chunk_size"] == settings.default_chunk_size

    def test_invalid_params(self, client, api_headers):
        response = submit(client, api_headers, kind="corpus-annotation", params={"artists": []})
        assert response.status_code == 400
        assert "artists" in response.json()["detail"]

    def test_unknown_kind_rejected(self, client, api_headers):
        response = submit(client, api_headers, kind="podcast-transcription")
        assert response.status_code == 422

    def test_chunk_size_limit(self, client, api_headers):
        response = submit(client, api_headers, chunk_size=settings.max_chunk_size + 1)
        assert response.status_code == 400

    def test_duplicate_job(self, client, api_headers):
        first = submit(client, api_headers, dedupe_key="seed-1").json()
        response = submit(client, api_headers, dedupe_key="seed-1")
        assert response.status_code == 409
        assert response.json()["existing_job_id"] == first["job_id"]

    def test_create_under_backpressure(self, client, api_headers, backpressure, dispatcher):
        backpressure.trigger("store latency 1500ms")
        response = submit(client, api_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["system_busy"] is True
        assert data["status"] == JobStatus.PENDING.value
        assert dispatcher.enqueued == []

    def test_creation_beyond_concurrency_cap_is_queued(self, client, api_headers, dispatcher):
        responses = [submit(client, api_headers).json() for _ in range(settings.max_concurrent_jobs + 1)]

        assert [r["status"] for r in responses[:-1]] == [JobStatus.PROCESSING.value] * settings.max_concurrent_jobs
        assert responses[-1]["status"] == JobStatus.PENDING.value
        assert responses[-1]["system_busy"] is False
        assert len(dispatcher.enqueued) == settings.max_concurrent_jobs

    def test_rate_limit(self, client, api_headers):
        codes = [submit(client, api_headers).status_code for _ in range(settings.rate_limit_per_minute + 1)]
        assert codes.count(200) == settings.rate_limit_per_minute
        assert codes[-1] == 429


class TestQueries:

    def test_job_not_found(self, client, api_headers):
        assert client.get("/jobs/no-such-job", headers=api_headers).status_code == 404

    def test_get_job_requires_auth(self, client, api_headers):
        job_id = submit(client, api_headers).json()["job_id"]
        assert client.get(f"/jobs/{job_id}").status_code == 401
        assert client.get(f"/jobs/{job_id}", headers={"access_token": "not-the-key"}).status_code == 403

    def test_list_jobs_with_filters(self, client, api_headers):
        seed = submit(client, api_headers).json()["job_id"]
        scrape = submit(client, api_headers, kind="scrape", params={"urls": ["https://example.com"]}).json()["job_id"]

        response = client.get("/jobs", headers=api_headers)
        assert {j["id"] for j in response.json()["jobs"]} == {seed, scrape}

        response = client.get("/jobs", params={"kind": "scrape"}, headers=api_headers)
        assert [j["id"] for j in response.json()["jobs"]] == [scrape]

    def test_list_requires_auth(self, client):
        assert client.get("/jobs").status_code == 401

    def test_children(self, client, api_headers, store, make_job):
        parent = make_job(kind="corpus-annotation", params={"artists": [{"artist_id": "a1"}]})
        child = make_job(parent_id=parent.id)

        response = client.get(f"/jobs/{parent.id}/children", headers=api_headers)
        assert [j["id"] for j in response.json()["jobs"]] == [child.id]


class TestControl:

    def test_cancel(self, client, api_headers):
        job_id = submit(client, api_headers).json()["job_id"]

        response = client.post(f"/jobs/{job_id}/cancel", headers=api_headers)
        assert response.status_code == 202
        assert response.json()["status"] == JobStatus.CANCELLED.value

    def test_cancel_finished_job(self, client, api_headers):
        job_id = submit(client, api_headers).json()["job_id"]
        client.post(f"/jobs/{job_id}/cancel", headers=api_headers)

        response = client.post(f"/jobs/{job_id}/cancel", headers=api_headers)
        assert response.status_code == 409
        assert response.json()["current_status"] == JobStatus.CANCELLED.value

    def test_pause_and_resume(self, client, api_headers, dispatcher):
        job_id = submit(client, api_headers).json()["job_id"]

        response = client.post(f"/jobs/{job_id}/pause", headers=api_headers)
        assert response.json()["status"] == JobStatus.PAUSED.value
        assert response.json()["pause_reason"] == "user"

        response = client.post(f"/jobs/{job_id}/resume", headers=api_headers)
        assert response.status_code == 200
        assert response.json()["status"] == JobStatus.PROCESSING.value
        assert dispatcher.job_ids() == [job_id, job_id]

    def test_pause_pending_job_conflicts(self, client, api_headers, backpressure):
        backpressure.trigger("manual")
        job_id = submit(client, api_headers).json()["job_id"]
        assert client.post(f"/jobs/{job_id}/pause", headers=api_headers).status_code == 409

    def test_resume_under_backpressure(self, client, api_headers, backpressure):
        job_id = submit(client, api_headers).json()["job_id"]
        client.post(f"/jobs/{job_id}/pause", headers=api_headers)
        backpressure.trigger("error spike")

        response = client.post(f"/jobs/{job_id}/resume", headers=api_headers)
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "300"
        assert response.json()["reason"] == "error spike"

    def test_retry_errored_job(self, client, api_headers, store, dispatcher):
        job_id = submit(client, api_headers).json()["job_id"]
        store.fail(job_id, "worker crashed")

        response = client.post(f"/jobs/{job_id}/retry", headers=api_headers)
        assert response.status_code == 200
        assert response.json()["status"] == JobStatus.PROCESSING.value
        assert response.json()["error_message"] is None
        assert dispatcher.job_ids() == [job_id, job_id]

    def test_retry_requires_error_status(self, client, api_headers):
        job_id = submit(client, api_headers).json()["job_id"]
        assert client.post(f"/jobs/{job_id}/retry", headers=api_headers).status_code == 409

    def test_recover_and_recovery_log(self, client, api_headers, store):
        job_id = submit(client, api_headers).json()["job_id"]
        store.fail(job_id, "worker crashed")

        response = client.post(f"/jobs/{job_id}/recover", headers=api_headers)
        assert response.status_code == 200
        result = response.json()
        assert result["strategy"] == "resume"
        assert result["attempt"] == 1
        assert result["dispatched"] is True

        log = client.get(f"/jobs/{job_id}/recovery-log", headers=api_headers).json()["attempts"]
        assert [(a["attempt"], a["strategy"], a["success"]) for a in log] == [(1, "resume", True)]


class TestSystem:

    def test_backpressure_status(self, client, probe):
        probe.latency_ms = 700
        data = client.get("/system/backpressure").json()
        assert data["regime"] == "degraded"
        assert data["is_active"] is False

    def test_metrics(self, client, api_headers):
        submit(client, api_headers)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "job_dispatches_total" in response.text
        assert "http_requests_total" in response.text

    def test_event_stream(self, client, subscriber):
        response = client.get("/events", params={"job_id": "job-1", "limit": 2})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        payloads = [
            json.loads(line[len("data: "):])
            for line in response.text.splitlines() if line.startswith("data: ")
        ]
        assert [(p["job_id"], p["status"]) for p in payloads] == [
            ("job-1", "processing"), ("job-1", "completed")
        ]
        assert subscriber.closed
