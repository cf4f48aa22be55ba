"""
Structured Logging Configuration

Provides JSON-formatted logging with:
- Request ID tracking
- Operator context
- Entity and timing fields
- Structured output for log aggregation
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
operator_id_var: ContextVar[str] = ContextVar('operator_id', default='')

AUDIT_LOGGER_NAME = "ticketdesk.audit"


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Outputs one JSON object per record for log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        operator_id = operator_id_var.get()
        if operator_id:
            log_data["operator_id"] = operator_id

        log_data["module"] = record.module
        log_data["function"] = record.funcName
        log_data["line"] = record.lineno

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data["data"] = record.extra_data

        if hasattr(record, 'duration_ms'):
            log_data["duration_ms"] = record.duration_ms

        if hasattr(record, 'entity_type'):
            log_data["entity_type"] = record.entity_type
        if hasattr(record, 'entity_id'):
            log_data["entity_id"] = record.entity_id

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that adds structured context to log messages.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def log_with_context(
        self,
        level: int,
        msg: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        **extra_data
    ):
        """Log with additional structured context."""
        extra = {}
        if entity_type:
            extra['entity_type'] = entity_type
        if entity_id:
            extra['entity_id'] = entity_id
        if duration_ms is not None:
            extra['duration_ms'] = duration_ms
        if extra_data:
            extra['extra_data'] = extra_data

        self.log(level, msg, extra=extra)

    def booking_upserted(self, confirmation_code: str, created: bool, source: str):
        self.log_with_context(
            logging.INFO,
            f"Booking {'created' if created else 'updated'}: {confirmation_code} ({source})",
            entity_type="booking",
            entity_id=confirmation_code,
            created=created,
            source=source
        )

    def booking_cancelled(self, confirmation_code: str, source: str):
        self.log_with_context(
            logging.INFO,
            f"Booking cancelled: {confirmation_code} ({source})",
            entity_type="booking",
            entity_id=confirmation_code,
            source=source
        )

    def webhook_state_changed(self, log_id: str, new_status: str, retry_count: int, error: Optional[str] = None):
        self.log_with_context(
            logging.WARNING if error else logging.INFO,
            f"Webhook {log_id} -> {new_status}" + (f": {error}" if error else ""),
            entity_type="webhook_log",
            entity_id=log_id,
            new_status=new_status,
            retry_count=retry_count
        )

    def message_status_changed(self, message_id: str, channel: str, old_status: str, new_status: str):
        self.log_with_context(
            logging.INFO,
            f"Message {channel} status changed: {old_status} -> {new_status}",
            entity_type="message",
            entity_id=message_id,
            old_status=old_status,
            new_status=new_status
        )

    def data_quality_warning(self, confirmation_code: str, issue: str, **details):
        self.log_with_context(
            logging.WARNING,
            f"Data quality: {confirmation_code}: {issue}",
            entity_type="booking",
            entity_id=confirmation_code,
            **details
        )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_uvicorn: bool = True
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        include_uvicorn: Also configure uvicorn loggers
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    logging.getLogger("ticketdesk").setLevel(log_level)

    if include_uvicorn:
        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            uvicorn_logger = logging.getLogger(logger_name)
            uvicorn_logger.handlers = [handler]

    # Reduce noise from third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    base_logger = logging.getLogger(name)
    return StructuredLogger(base_logger, {})


def get_audit_logger() -> StructuredLogger:
    return get_logger(AUDIT_LOGGER_NAME)


def set_request_context(request_id: str, operator_id: Optional[str] = None):
    """Set context for the current request."""
    request_id_var.set(request_id)
    if operator_id:
        operator_id_var.set(operator_id)


def clear_request_context():
    request_id_var.set('')
    operator_id_var.set('')
