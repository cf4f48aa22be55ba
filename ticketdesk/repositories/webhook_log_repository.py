from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.webhook_log import WebhookLog, WebhookLogStatus
from ..utils.db_helpers import get_pending_with_skip_locked

SORTABLE_COLUMNS = {
    "created_at": WebhookLog.created_at,
    "updated_at": WebhookLog.updated_at,
    "event_type": WebhookLog.event_type,
    "status": WebhookLog.status,
    "retry_count": WebhookLog.retry_count,
}


class WebhookLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        event_type: str,
        confirmation_code: Optional[str],
        payload: Dict,
        headers: Optional[Dict] = None
    ) -> WebhookLog:
        log = WebhookLog(
            event_type=event_type or "unknown",
            confirmation_code=confirmation_code,
            payload=payload,
            headers=headers,
            status=WebhookLogStatus.PENDING.value,
            retry_count=0,
        )
        self.db.add(log)
        self.db.flush()
        return log

    def get(self, log_id: str) -> Optional[WebhookLog]:
        return self.db.query(WebhookLog).filter(WebhookLog.id == log_id).first()

    def list(
        self,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        confirmation_code: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_dir: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[WebhookLog], int]:
        query = self.db.query(WebhookLog)
        if status:
            query = query.filter(WebhookLog.status == status)
        if event_type:
            query = query.filter(WebhookLog.event_type == event_type)
        if confirmation_code:
            query = query.filter(WebhookLog.confirmation_code.ilike(f"%{confirmation_code}%"))
        if date_from:
            query = query.filter(WebhookLog.created_at >= date_from)
        if date_to:
            query = query.filter(WebhookLog.created_at <= date_to)

        column = SORTABLE_COLUMNS.get(sort_by, WebhookLog.created_at)
        query = query.order_by(column.asc() if sort_dir == "asc" else column.desc())

        total = query.count()
        items = query.offset((page - 1) * page_size).limit(page_size).all()
        return items, total

    def retryable(self, max_retries: int, limit: int = 50) -> List[WebhookLog]:
        """Failed logs under the retry ceiling, oldest first."""
        return get_pending_with_skip_locked(
            self.db,
            WebhookLog,
            (WebhookLog.status == WebhookLogStatus.FAILED.value) & (WebhookLog.retry_count < max_retries),
            order_by=WebhookLog.created_at.asc(),
            limit=limit,
        )

    def stale_pending(self, older_than: datetime, limit: int = 50) -> List[WebhookLog]:
        """Pending logs left behind by a crash mid-processing."""
        return get_pending_with_skip_locked(
            self.db,
            WebhookLog,
            (WebhookLog.status == WebhookLogStatus.PENDING.value) & (WebhookLog.created_at < older_than),
            order_by=WebhookLog.created_at.asc(),
            limit=limit,
        )

    def stats(self, max_retries: int) -> Dict:
        by_status = dict(
            self.db.query(WebhookLog.status, func.count(WebhookLog.id))
            .group_by(WebhookLog.status)
            .all()
        )
        by_event_type = dict(
            self.db.query(WebhookLog.event_type, func.count(WebhookLog.id))
            .group_by(WebhookLog.event_type)
            .all()
        )
        retryable = self.db.query(WebhookLog).filter(
            WebhookLog.status == WebhookLogStatus.FAILED.value,
            WebhookLog.retry_count < max_retries,
        ).count()
        recent_failures = self.db.query(WebhookLog).filter(
            WebhookLog.status == WebhookLogStatus.FAILED.value
        ).order_by(WebhookLog.updated_at.desc()).limit(5).all()

        return {
            "total": sum(by_status.values()),
            "pending": by_status.get(WebhookLogStatus.PENDING.value, 0),
            "processed": by_status.get(WebhookLogStatus.PROCESSED.value, 0),
            "failed": by_status.get(WebhookLogStatus.FAILED.value, 0),
            "retryable": retryable,
            "by_event_type": by_event_type,
            "recent_failures": recent_failures,
        }

    def delete_older_than(self, cutoff: datetime, status: Optional[str] = None) -> int:
        query = self.db.query(WebhookLog).filter(WebhookLog.created_at < cutoff)
        if status:
            query = query.filter(WebhookLog.status == status)
        deleted = query.delete(synchronize_session=False)
        self.db.flush()
        return deleted
