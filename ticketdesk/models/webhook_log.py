"""
Webhook Log Model

Every accepted inbound webhook is stored here before it is processed,
so a crash mid-processing leaves a recoverable pending record.

State machine:
    pending -> processed
    pending -> failed       (retry_count + 1)
    failed  -> failed       (retry_count + 1)
    failed  -> pending      (reset for retry, retry_count kept)

`processed` is terminal.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, JSON
from ..database import Base
from ..exceptions import InvalidTransitionError
import enum


class WebhookLogStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


WEBHOOK_TRANSITIONS = {
    WebhookLogStatus.PENDING: {WebhookLogStatus.PROCESSED, WebhookLogStatus.FAILED},
    WebhookLogStatus.FAILED: {WebhookLogStatus.FAILED, WebhookLogStatus.PENDING},
    WebhookLogStatus.PROCESSED: set(),
}


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(String(100), nullable=False, default="unknown")
    confirmation_code = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)

    status = Column(String(20), default=WebhookLogStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_log_status", "status", "created_at"),
        Index("ix_webhook_log_event_type", "event_type"),
        Index("ix_webhook_log_code", "confirmation_code"),
    )

    def _move_to(self, target: WebhookLogStatus):
        current = WebhookLogStatus(self.status)
        if target not in WEBHOOK_TRANSITIONS[current]:
            raise InvalidTransitionError("WebhookLog", current.value, target.value)
        self.status = target.value

    def mark_processed(self):
        self._move_to(WebhookLogStatus.PROCESSED)
        self.processed_at = datetime.utcnow()
        self.error_message = None

    def mark_failed(self, error: str, max_retries: int, permanent: bool = False):
        """
        Record a failed attempt.

        Permanent failures jump straight to the retry ceiling so no
        automatic sweep picks them up again.
        """
        self._move_to(WebhookLogStatus.FAILED)
        self.error_message = (error or "Unknown error")[:2000]
        current = self.retry_count or 0
        if permanent:
            self.retry_count = max(current, max_retries)
        else:
            self.retry_count = current + 1

    def reset_for_retry(self):
        self._move_to(WebhookLogStatus.PENDING)
        self.error_message = None

    def is_retryable(self, max_retries: int) -> bool:
        return self.status == WebhookLogStatus.FAILED.value and (self.retry_count or 0) < max_retries

    def __repr__(self):
        return f"<WebhookLog {self.event_type} {self.confirmation_code} status={self.status}>"
