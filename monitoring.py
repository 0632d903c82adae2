from fastapi import Request
import time
import logging
from prometheus_client import Counter, Gauge, Histogram, Enum, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response as FastAPIResponse

logger = logging.getLogger(__name__)

# Prometheus metrics
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

job_count = Counter(
    'jobs_total',
    'Jobs reaching a status',
    ['kind', 'status']
)

chunk_count = Counter(
    'job_chunks_total',
    'Chunk runs by outcome',
    ['kind', 'outcome']
)

chunk_duration = Histogram(
    'job_chunk_duration_seconds',
    'Chunk processing duration',
    ['kind'],
    buckets=(0.5, 1, 5, 15, 30, 60, 120, 240, 400)
)

item_count = Counter(
    'job_items_total',
    'Work items processed',
    ['kind', 'outcome']
)

dispatch_count = Counter(
    'job_dispatches_total',
    'Chunks enqueued',
    ['source']
)

recovery_count = Counter(
    'job_recoveries_total',
    'Recovery attempts',
    ['strategy', 'success']
)

stalled_jobs = Gauge(
    'jobs_stalled',
    'Jobs classified stalled by the last audit'
)

backpressure_regime = Enum(
    'backpressure_regime',
    'Current backpressure regime',
    states=['healthy', 'degraded', 'backpressure-active']
)


class MonitoringMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        start_time = time.time()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                duration = time.time() - start_time
                status_code = message["status"]

                # job ids would explode label cardinality
                endpoint = getattr(scope.get("route"), "path", request.url.path)

                request_count.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=status_code
                ).inc()

                request_duration.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(duration)

                logger.info(
                    f"{request.method} {request.url.path} "
                    f"- {status_code} - {duration:.3f}s"
                )

            await send(message)

        await self.app(scope, receive, send_wrapper)


def setup_monitoring(app):
    """Setup monitoring middleware and endpoints"""

    app.add_middleware(MonitoringMiddleware)

    @app.get("/metrics")
    def get_metrics():
        """Prometheus metrics endpoint"""
        return FastAPIResponse(
            generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    return {
        "job_count": job_count,
        "chunk_count": chunk_count,
        "backpressure_regime": backpressure_regime,
    }
