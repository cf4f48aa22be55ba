"""
Webhook Processor

Turns a stored WebhookLog into booking mutations and moves the log
through its state machine. Used by:
- inline processing right after ingestion
- the admin single retry and retry-all
- the background sweeps (failed retries, stale pending recovery)

Status changes are committed per log so one bad event never takes a
batch down with it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import BookingDataError, InvalidTransitionError, NotFoundError
from ..models.webhook_log import WebhookLog, WebhookLogStatus
from ..repositories.webhook_log_repository import WebhookLogRepository
from ..utils.logging_config import get_logger
from .booking_mutations import BookingMutator, MutationSummary

logger = get_logger(__name__)


@dataclass
class WebhookProcessResult:
    """Result of processing one webhook log"""
    success: bool
    action: str  # processed, failed, rejected
    log_id: Optional[str] = None
    summary: MutationSummary = field(default_factory=MutationSummary)
    error: Optional[str] = None
    permanent: bool = False

    def as_response(self) -> Dict:
        body = {
            "message": "Processed" if self.success else "Processing failed",
            "webhook_log_id": self.log_id,
            **self.summary.as_dict(),
        }
        if self.error:
            body["error"] = self.error
        return body


class WebhookProcessor:
    def __init__(self, db: Session, settings: Settings, request_id: Optional[str] = None):
        self.db = db
        self.settings = settings
        self.request_id = request_id or "worker"
        self.logs = WebhookLogRepository(db)
        self.mutator = BookingMutator(db, settings)
        self.max_retries = settings.webhook_max_retries

    def process(self, log: WebhookLog) -> WebhookProcessResult:
        """
        Apply one pending log. The log ends processed or failed.

        Data errors are permanent (retrying unchanged input cannot
        succeed); anything else is transient and counts one retry.
        """
        log_id = log.id
        try:
            summary = self.mutator.apply_webhook_event(log.payload, log.event_type)
            log.mark_processed()
            self.db.commit()
        except BookingDataError as e:
            self.db.rollback()
            return self._fail(log, str(e), permanent=True)
        except (SQLAlchemyError, InvalidTransitionError) as e:
            self.db.rollback()
            return self._fail(log, str(e), permanent=False)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"[{self.request_id}] Unexpected error processing webhook {log_id}")
            return self._fail(log, f"{type(e).__name__}: {e}", permanent=False)

        logger.webhook_state_changed(log_id, log.status, log.retry_count or 0)
        return WebhookProcessResult(success=True, action="processed", log_id=log_id, summary=summary)

    def _fail(self, log: WebhookLog, error: str, permanent: bool) -> WebhookProcessResult:
        log.mark_failed(error, self.max_retries, permanent=permanent)
        self.db.commit()
        logger.webhook_state_changed(log.id, log.status, log.retry_count or 0, error=error)
        return WebhookProcessResult(
            success=False,
            action="failed",
            log_id=log.id,
            error=error,
            permanent=permanent,
        )

    def _reset(self, log: WebhookLog):
        log.reset_for_retry()
        self.db.commit()

    def retry(self, log_id: str) -> WebhookProcessResult:
        """Admin retry of one log, processed synchronously."""
        log = self.logs.get(log_id)
        if log is None:
            raise NotFoundError("WebhookLog", log_id)
        if log.status == WebhookLogStatus.PROCESSED.value:
            raise InvalidTransitionError("WebhookLog", log.status, WebhookLogStatus.PENDING.value)
        if log.status == WebhookLogStatus.FAILED.value:
            self._reset(log)
        logger.info(f"[{self.request_id}] Manual retry of webhook {log_id} (attempts so far: {log.retry_count})")
        return self.process(log)

    def retry_failed(self, limit: Optional[int] = None) -> Tuple[int, int]:
        """Retry failed logs under the retry ceiling, oldest first."""
        logs = self.logs.retryable(self.max_retries, limit or self.settings.webhook_retry_batch_size)
        return self._run(logs)

    def recover_stale_pending(self, limit: Optional[int] = None) -> Tuple[int, int]:
        """Process pending logs abandoned by a crash mid-processing."""
        older_than = datetime.utcnow() - timedelta(minutes=self.settings.webhook_stale_pending_minutes)
        logs = self.logs.stale_pending(older_than, limit or self.settings.webhook_retry_batch_size)
        return self._run(logs, reset=False)

    def process_batch(self, limit: Optional[int] = None) -> Tuple[int, int]:
        recovered_ok, recovered_failed = self.recover_stale_pending(limit)
        retried_ok, retried_failed = self.retry_failed(limit)
        return recovered_ok + retried_ok, recovered_failed + retried_failed

    def _run(self, logs, reset: bool = True) -> Tuple[int, int]:
        success = 0
        failed = 0
        for log in logs:
            try:
                if reset:
                    self._reset(log)
                result = self.process(log)
            except (SQLAlchemyError, InvalidTransitionError) as e:
                self.db.rollback()
                logger.error(f"[{self.request_id}] Webhook {log.id} sweep error: {e}")
                failed += 1
                continue
            except Exception:
                self.db.rollback()
                logger.exception(f"[{self.request_id}] Webhook {log.id} sweep error")
                failed += 1
                continue
            if result.success:
                success += 1
            else:
                failed += 1

        if success + failed:
            logger.info(f"[{self.request_id}] Webhook sweep: {success} processed, {failed} failed")
        return success, failed
