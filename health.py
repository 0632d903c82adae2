from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
from database import get_db
from backpressure import BackpressureController, Regime, get_backpressure
import psutil
from datetime import datetime

health_router = APIRouter()

@health_router.get("/")
def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": "Job Orchestration API",
        "version": "1.0.0"
    }

@health_router.get("/detailed")
def detailed_health_check(
    db: Session = Depends(get_db),
    backpressure: BackpressureController = Depends(get_backpressure)
):
    """Detailed health check with dependencies"""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {}
    }

    # Database check
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    # Redis check, through the same connection the backpressure state lives on
    try:
        backpressure.redis.ping()
        health_status["checks"]["redis"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["redis"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    # Backpressure is a throttle, not an outage
    try:
        bp_status = backpressure.status()
        health_status["checks"]["backpressure"] = {
            "status": "healthy" if bp_status.regime == Regime.HEALTHY else "warning",
            "regime": bp_status.regime.value,
            "cooldown_remaining_seconds": bp_status.cooldown_remaining_seconds,
            "trigger_reason": bp_status.trigger_reason
        }
    except Exception as e:
        health_status["checks"]["backpressure"] = {
            "status": "unhealthy",
            "error": str(e)
        }

    # System resources
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        health_status["checks"]["system"] = {
            "status": "healthy",
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "disk_percent": disk.percent
        }

        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            health_status["checks"]["system"]["status"] = "warning"

    except Exception as e:
        health_status["checks"]["system"] = {
            "status": "unhealthy",
            "error": str(e)
        }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status

@health_router.get("/ready")
def readiness_check(
    db: Session = Depends(get_db),
    backpressure: BackpressureController = Depends(get_backpressure)
):
    """Kubernetes readiness probe"""
    try:
        db.execute(text("SELECT 1"))
        backpressure.redis.ping()
        return {"status": "ready"}

    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail={"status": "not ready", "error": str(e)}
        )

@health_router.get("/live")
def liveness_check():
    """Kubernetes liveness probe"""
    return {"status": "alive"}
