from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from typing import Any, Dict, Iterator, Optional
import uuid
import logging
import redis
from contextlib import asynccontextmanager

# Local imports
from config import settings
from database import get_db, create_tables
from security import security_manager
from rate_limiter import setup_rate_limiting, limiter, JOB_CREATION_LIMIT
from health import health_router
from monitoring import setup_monitoring, backpressure_regime
from backpressure import BackpressureController, get_backpressure
from dispatcher import ChunkDispatcher, dispatch_job, get_dispatcher
from exceptions import DuplicateJob, InvalidTransition, JobNotFound, SystemBusy, UnknownJobKind
from job_store import JobStore
from models import JobKind, PauseReason
from notifications import JobEventPublisher, JobEventSubscriber, get_publisher, open_subscriber
from recovery import RecoveryEngine
from workloads import get_workload

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

KEEPALIVE_POLLS = 15

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        create_tables()
        logger.info("Application started successfully")

        redis.from_url(settings.redis_url).ping()
        logger.info("Redis connection established")

    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    # Shutdown
    logger.info("Application shutting down")

# Create FastAPI app
app = FastAPI(
    title="Job Orchestration API",
    description="Chunked, resumable processing of long-running annotation and import jobs",
    version="1.0.0",
    lifespan=lifespan
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure properly for production
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup rate limiting
setup_rate_limiting(app)

# Setup monitoring
setup_monitoring(app)

# Include health check router
app.include_router(health_router, prefix="/health", tags=["health"])

# Dependencies
def get_store(
    db: Session = Depends(get_db),
    publisher: JobEventPublisher = Depends(get_publisher)
) -> JobStore:
    return JobStore(db, notifier=publisher)

def ensure_not_busy(backpressure: BackpressureController):
    """Raise SystemBusy while a backpressure cooldown is running"""
    if backpressure.is_active():
        bp_status = backpressure.status()
        raise SystemBusy(bp_status.trigger_reason, retry_after=bp_status.cooldown_remaining_seconds)

# Request/Response models
class CreateJobRequest(BaseModel):
    kind: JobKind
    params: Dict[str, Any] = Field(default_factory=dict)
    chunk_size: Optional[int] = Field(default=None, ge=1)
    dedupe_key: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "lexicon-seed",
                "params": {"words": ["flow", "bars", "verse"]},
                "chunk_size": 100,
                "dedupe_key": "seed-2024-06"
            }
        }

class JobResponse(BaseModel):
    job_id: str
    status: str
    message: str
    system_busy: bool = False

# Exception handlers
@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current_status": exc.current, "target_status": exc.target}
    )

@app.exception_handler(DuplicateJob)
async def duplicate_job_handler(request: Request, exc: DuplicateJob):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "existing_job_id": exc.existing_job_id, "status": exc.status}
    )

@app.exception_handler(UnknownJobKind)
async def unknown_kind_handler(request: Request, exc: UnknownJobKind):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(SystemBusy)
async def system_busy_handler(request: Request, exc: SystemBusy):
    return JSONResponse(
        status_code=503,
        content={"detail": "System busy", "reason": exc.reason, "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)}
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
    )

@app.post("/jobs", response_model=JobResponse)
@limiter.limit(JOB_CREATION_LIMIT)
def create_job(
    request: Request,
    job_request: CreateJobRequest,
    store: JobStore = Depends(get_store),
    dispatcher: ChunkDispatcher = Depends(get_dispatcher),
    backpressure: BackpressureController = Depends(get_backpressure),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Create a job and dispatch its first chunk"""

    kind = job_request.kind.value
    workload = get_workload(kind)
    try:
        workload.validate(job_request.params)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    chunk_size = job_request.chunk_size or settings.default_chunk_size
    if chunk_size > settings.max_chunk_size:
        raise HTTPException(
            status_code=400,
            detail=f"chunk_size exceeds the limit of {settings.max_chunk_size}"
        )

    job = store.create(
        kind=kind,
        params=job_request.params,
        chunk_size=chunk_size,
        total_units=workload.count_units(job_request.params),
        cursor=workload.initial_cursor(),
        dedupe_key=job_request.dedupe_key,
        client_ip=security_manager.get_client_ip(request)
    )
    job_id = job.id

    dispatched = dispatch_job(store, dispatcher, backpressure, job)
    system_busy = not dispatched and backpressure.is_active()
    if dispatched:
        message = "Job submitted successfully"
    elif system_busy:
        message = "System busy, the job will start when backpressure clears"
    else:
        message = "Job queued for dispatch"

    logger.info(f"Job {job_id} submitted ({kind}, dispatched={dispatched})")
    return JobResponse(job_id=job_id, status=store.require(job_id).status, message=message, system_busy=system_busy)

@app.get("/jobs")
def list_jobs(
    kind: Optional[str] = None,
    status: Optional[str] = None,
    parent_id: Optional[str] = None,
    skip: int = 0,
    limit: int = Query(100, le=500),
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    """List jobs, newest first"""
    jobs = store.list_jobs(kind=kind, status=status, parent_id=parent_id, skip=skip, limit=limit)
    return {"jobs": [job.to_dict() for job in jobs]}

@app.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Get job status and progress"""
    return store.require(job_id).to_dict()

@app.get("/jobs/{job_id}/children")
def get_job_children(
    job_id: str,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    store.require(job_id)
    return {"jobs": [child.to_dict() for child in store.children(job_id)]}

@app.get("/jobs/{job_id}/recovery-log")
def get_recovery_log(
    job_id: str,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    store.require(job_id)
    return {"attempts": [entry.to_dict() for entry in store.recovery_log(job_id)]}

@app.post("/jobs/{job_id}/cancel", status_code=202)
def cancel_job(
    job_id: str,
    force: bool = False,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Request cooperative cancellation; ``force`` cancels immediately"""
    job = store.request_cancel(job_id, force=force)
    return job.to_dict()

@app.post("/jobs/{job_id}/pause")
def pause_job(
    job_id: str,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    return store.pause(job_id, PauseReason.USER).to_dict()

@app.post("/jobs/{job_id}/resume")
def resume_job(
    job_id: str,
    store: JobStore = Depends(get_store),
    dispatcher: ChunkDispatcher = Depends(get_dispatcher),
    backpressure: BackpressureController = Depends(get_backpressure),
    api_key: str = Depends(security_manager.get_api_key)
):
    ensure_not_busy(backpressure)
    job = store.resume(job_id)
    dispatch_job(store, dispatcher, backpressure, job, source="resume")
    return store.require(job_id).to_dict()

@app.post("/jobs/{job_id}/retry")
def retry_job(
    job_id: str,
    store: JobStore = Depends(get_store),
    dispatcher: ChunkDispatcher = Depends(get_dispatcher),
    backpressure: BackpressureController = Depends(get_backpressure),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Re-open an errored job from its last committed cursor"""
    ensure_not_busy(backpressure)
    job = store.retry(job_id)
    dispatch_job(store, dispatcher, backpressure, job, source="retry")
    return store.require(job_id).to_dict()

@app.post("/jobs/{job_id}/recover")
def recover_job(
    job_id: str,
    store: JobStore = Depends(get_store),
    dispatcher: ChunkDispatcher = Depends(get_dispatcher),
    backpressure: BackpressureController = Depends(get_backpressure),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Run the recovery ladder on one job now"""
    ensure_not_busy(backpressure)
    job = store.require(job_id)
    result = RecoveryEngine(store, dispatcher, backpressure).recover(job)
    return result.to_dict()

@app.get("/system/backpressure")
def get_backpressure_status(backpressure: BackpressureController = Depends(get_backpressure)):
    regime = backpressure.evaluate()
    backpressure_regime.state(regime.value)
    return backpressure.status().to_dict()

def event_stream(
    subscriber: JobEventSubscriber,
    job_id: Optional[str] = None,
    limit: Optional[int] = None
) -> Iterator[str]:
    sent = 0
    idle_polls = 0
    try:
        while limit is None or sent < limit:
            event = subscriber.get_event(timeout=1.0)
            if event is None:
                idle_polls += 1
                if idle_polls >= KEEPALIVE_POLLS:
                    idle_polls = 0
                    yield ": keep-alive\n\n"
                continue
            idle_polls = 0
            if job_id and event.job_id != job_id:
                continue
            yield f"event: job\ndata: {event.model_dump_json()}\n\n"
            sent += 1
    finally:
        subscriber.close()

@app.get("/events")
def stream_events(
    job_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    subscriber: JobEventSubscriber = Depends(open_subscriber)
):
    """Server-sent events relay of the job event channel"""
    return StreamingResponse(
        event_stream(subscriber, job_id=job_id, limit=limit),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
