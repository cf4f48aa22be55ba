from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime


class WebhookLogResponse(BaseModel):
    id: str
    event_type: str
    confirmation_code: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    retry_count: int = 0
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookLogDetail(WebhookLogResponse):
    payload: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, Any]] = None


class WebhookStats(BaseModel):
    total: int
    pending: int
    processed: int
    failed: int
    retryable: int
    by_event_type: Dict[str, int] = {}
    recent_failures: List[WebhookLogResponse] = []


class WebhookRetryResponse(BaseModel):
    success: bool
    message: str
    webhook_log_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class RetryAllResponse(BaseModel):
    message: str
    queued: int


class CleanupResponse(BaseModel):
    message: str
    deleted: int
