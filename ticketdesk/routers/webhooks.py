"""
Bokun webhook ingestion and webhook log administration.

POST /webhook/bokun is public and authenticated by HMAC signature.
Everything under /api/webhooks needs an operator token.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import SessionLocal, get_db
from ..exceptions import InvalidTransitionError, NotFoundError
from ..models.webhook_log import WebhookLogStatus
from ..repositories.webhook_log_repository import WebhookLogRepository
from ..schemas.pagination import PaginatedResponse
from ..schemas.webhook import (
    CleanupResponse,
    RetryAllResponse,
    WebhookLogDetail,
    WebhookLogResponse,
    WebhookRetryResponse,
    WebhookStats,
)
from ..services.webhook_processor import WebhookProcessor
from ..services.webhook_receiver import WebhookReceiver
from ..utils.dependencies import Operator, get_current_operator, get_request_id
from ..utils.logging_config import get_logger
from ..utils.rate_limiter import RATE_LIMITS, get_real_client_ip, limiter

logger = get_logger(__name__)

router = APIRouter(tags=["Webhooks"])
admin_router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/webhook/bokun")
@limiter.limit(RATE_LIMITS["webhook"])
async def bokun_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Receive a Bokun booking webhook.

    Forged or unsigned deliveries get 401 and leave no log row. Accepted
    deliveries always get 200 with a small summary; failures are retried
    internally, not by Bokun.
    """
    request_id = get_request_id(request)
    body = await request.body()

    receiver = WebhookReceiver(db, settings, request_id)
    result = receiver.receive(body, request.headers, client_ip=get_real_client_ip(request))
    return JSONResponse(status_code=result.status_code, content=result.body)


# ==================
# Admin
# ==================

def _retry_all_in_background(settings: Settings, request_id: str):
    db = SessionLocal()
    try:
        WebhookProcessor(db, settings, request_id).retry_failed()
    finally:
        db.close()


@admin_router.get("", response_model=PaginatedResponse[WebhookLogResponse])
@limiter.limit(RATE_LIMITS["booking_read"])
def list_webhook_logs(
    request: Request,
    status_filter: Optional[WebhookLogStatus] = Query(None, alias="status"),
    event_type: Optional[str] = None,
    confirmation_code: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort_by: str = Query("created_at", pattern="^(created_at|updated_at|status|event_type|retry_count)$"),
    sort_dir: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    items, total = WebhookLogRepository(db).list(
        status=status_filter.value if status_filter else None,
        event_type=event_type,
        confirmation_code=confirmation_code,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_dir=sort_dir,
        page=page,
        page_size=page_size,
    )
    return PaginatedResponse.create(
        items=[WebhookLogResponse.model_validate(log) for log in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@admin_router.get("/stats", response_model=WebhookStats)
def webhook_stats(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    operator: Operator = Depends(get_current_operator),
):
    stats = WebhookLogRepository(db).stats(settings.webhook_max_retries)
    stats["recent_failures"] = [WebhookLogResponse.model_validate(log) for log in stats["recent_failures"]]
    return WebhookStats(**stats)


@admin_router.post("/retry-all", response_model=RetryAllResponse)
@limiter.limit(RATE_LIMITS["sync"])
def retry_all_webhooks(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    operator: Operator = Depends(get_current_operator),
):
    """Queue every failed log under the retry ceiling for background processing."""
    queued = len(WebhookLogRepository(db).retryable(settings.webhook_max_retries, settings.webhook_retry_batch_size))
    if queued:
        background_tasks.add_task(_retry_all_in_background, settings, get_request_id(request))
    return RetryAllResponse(message=f"{queued} webhooks queued for retry", queued=queued)


@admin_router.delete("/cleanup", response_model=CleanupResponse)
def cleanup_webhook_logs(
    days: int = Query(30, ge=1, le=3650),
    status_filter: Optional[WebhookLogStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    cutoff = datetime.utcnow() - timedelta(days=days)
    deleted = WebhookLogRepository(db).delete_older_than(cutoff, status_filter.value if status_filter else None)
    db.commit()
    logger.info(f"Operator {operator.id} deleted {deleted} webhook logs older than {days} days")
    return CleanupResponse(message=f"Deleted {deleted} webhook logs older than {days} days", deleted=deleted)


@admin_router.get("/{log_id}", response_model=WebhookLogDetail)
def get_webhook_log(
    log_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    log = WebhookLogRepository(db).get(log_id)
    if log is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook log not found")
    return WebhookLogDetail.model_validate(log)


@admin_router.post("/{log_id}/retry", response_model=WebhookRetryResponse)
@limiter.limit(RATE_LIMITS["sync"])
def retry_webhook(
    request: Request,
    log_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    operator: Operator = Depends(get_current_operator),
):
    """Retry one log synchronously through the shared processor."""
    processor = WebhookProcessor(db, settings, get_request_id(request))
    try:
        result = processor.retry(log_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook log not found")
    except InvalidTransitionError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Webhook already processed")

    log = WebhookLogRepository(db).get(log_id)
    return WebhookRetryResponse(
        success=result.success,
        message="Webhook processed" if result.success else "Webhook processing failed",
        webhook_log_id=log_id,
        status=log.status if log else None,
        error=result.error,
    )
