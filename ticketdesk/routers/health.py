"""
Health Check Endpoints

- /health - simple status
- /health/live - Liveness check (is process running)
- /health/ready - Readiness check (database reachable)
- /health/detailed - Component checks and job status (operators only)
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
import time

from ..config import Settings, get_settings
from ..database import get_db
from ..models.webhook_log import WebhookLog, WebhookLogStatus
from ..models.message import Message, MessageStatus
from ..services.bokun_client import get_bokun_client
from ..services.scheduler import JobScheduler, get_scheduler
from ..utils.dependencies import Operator, get_current_operator
from ..utils.rate_limiter import get_storage_uri

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": "postgresql" if "postgresql" in str(db.bind.url) else "sqlite"
        }
    except SQLAlchemyError as e:
        return {
            "status": "down",
            "error": str(e)[:100]
        }


def get_bokun_health(settings: Settings) -> dict:
    if not settings.has_bokun_credentials:
        return {"status": "not_configured"}
    start = time.time()
    with get_bokun_client(settings, request_id="health") as client:
        response = client.test_connection()
    latency_ms = round((time.time() - start) * 1000, 2)
    if response.success:
        return {"status": "up", "latency_ms": latency_ms}
    if response.timed_out:
        return {"status": "timeout"}
    return {"status": "degraded", "http_status": response.status_code, "error": (response.error or "")[:100]}


def get_queue_health(db: Session, settings: Settings) -> dict:
    failed_webhooks = db.query(WebhookLog).filter(
        WebhookLog.status == WebhookLogStatus.FAILED.value,
        WebhookLog.retry_count < settings.webhook_max_retries,
    ).count()
    pending_webhooks = db.query(WebhookLog).filter(
        WebhookLog.status == WebhookLogStatus.PENDING.value
    ).count()
    failed_messages = db.query(Message).filter(Message.status == MessageStatus.FAILED.value).count()
    return {
        "status": "up",
        "pending_webhooks": pending_webhooks,
        "retryable_webhooks": failed_webhooks,
        "failed_messages": failed_messages,
    }


@router.get("/live")
async def liveness_check():
    """
    Liveness check - is the process running?
    Used by load balancers and orchestrators.
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - is the service ready to accept traffic?
    Checks database connectivity.
    """
    db_health = get_db_health(db)

    if db_health["status"] == "up":
        return {
            "status": "ready",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "not_ready",
            "reason": "database_unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


@router.get("/detailed")
def detailed_health_check(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    scheduler: JobScheduler = Depends(get_scheduler),
    operator: Operator = Depends(get_current_operator)
):
    """Detailed health check with all component statuses."""
    db_health = get_db_health(db)
    checks = {
        "database": db_health,
        "bokun": get_bokun_health(settings),
        "redis": {"status": "up" if get_storage_uri() else "not_configured"},
        "twilio": {"status": "configured" if settings.has_twilio_credentials else "not_configured"},
        "sendgrid": {"status": "configured" if settings.sendgrid_api_key else "not_configured"},
    }
    if db_health["status"] == "up":
        checks["queues"] = get_queue_health(db, settings)

    critical_down = db_health["status"] == "down"
    any_degraded = any(c.get("status") in ("degraded", "timeout") for c in checks.values())

    if critical_down:
        overall_status = "unhealthy"
    elif any_degraded:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "environment": settings.environment,
        "checks": checks,
        "jobs": scheduler.status(),
        "config": {
            "scheduler_enabled": settings.scheduler_enabled,
            "sync_interval_minutes": settings.sync_interval_minutes,
            "worker_poll_interval": settings.worker_poll_interval,
            "storage_driver": settings.storage_driver,
        }
    }


@router.get("")
async def simple_health_check():
    """Simple health check without authentication."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION
    }
