"""
Bokun Webhook Receiver

Ingestion path for POST /webhook/bokun:
1. Authenticity check (before any state mutation)
2. Persist a pending WebhookLog and commit it
3. Process inline through the shared WebhookProcessor
4. Always answer 200 to accepted deliveries so Bokun does not retry;
   our own sweeps own retries from here on
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..utils.logging_config import get_logger, get_audit_logger
from .booking_mutations import webhook_confirmation_code, webhook_event_type
from .signature import verify_webhook_signature, WEBHOOK_HEADER_PREFIX
from .webhook_processor import WebhookProcessor, WebhookProcessResult
from ..repositories.webhook_log_repository import WebhookLogRepository

logger = get_logger(__name__)
audit_logger = get_audit_logger()

# Headers worth keeping on the log for debugging
STORED_HEADER_PREFIXES = (WEBHOOK_HEADER_PREFIX, "content-type", "user-agent", "x-request-id")


@dataclass
class WebhookReceiveResult:
    accepted: bool
    status_code: int
    body: Dict = field(default_factory=dict)
    log_id: Optional[str] = None


class WebhookReceiver:
    def __init__(self, db: Session, settings: Settings, request_id: Optional[str] = None):
        self.db = db
        self.settings = settings
        self.request_id = request_id or "no-request-id"
        self.logs = WebhookLogRepository(db)

    def check_authenticity(self, headers: Mapping[str, str], client_ip: Optional[str]) -> Optional[str]:
        """Return a rejection reason, or None if the delivery may proceed."""
        secret = self.settings.bokun_webhook_secret
        if not secret:
            if self.settings.bokun_require_signature:
                return "Webhook secret not configured and signatures are required"
            return None
        if not verify_webhook_signature(headers, secret):
            return "Invalid webhook signature"
        return None

    def receive(
        self,
        body: bytes,
        headers: Mapping[str, str],
        client_ip: Optional[str] = None,
    ) -> WebhookReceiveResult:
        reason = self.check_authenticity(headers, client_ip)
        if reason:
            audit_logger.log_with_context(
                logging.WARNING,
                f"[{self.request_id}] Webhook rejected: {reason}",
                entity_type="webhook",
                client_ip=client_ip,
                header_names=sorted({str(k).lower() for k in headers.keys()}),
                reason=reason,
            )
            return WebhookReceiveResult(accepted=False, status_code=401, body={"detail": reason})

        try:
            payload = json.loads(body.decode("utf-8")) if body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None

        if isinstance(payload, dict):
            event_type = webhook_event_type(payload)
            confirmation_code = webhook_confirmation_code(payload)
            stored_payload = payload
        else:
            # Keep the raw body so the failure can be inspected
            event_type = "unknown"
            confirmation_code = None
            stored_payload = {"raw": body.decode("utf-8", errors="replace")[:10000] if body else ""}

        log = self.logs.create_pending(
            event_type=event_type,
            confirmation_code=confirmation_code,
            payload=stored_payload,
            headers=self._stored_headers(headers),
        )
        self.db.commit()
        logger.info(f"[{self.request_id}] Webhook {event_type} {confirmation_code} stored as {log.id}")

        result: WebhookProcessResult = WebhookProcessor(self.db, self.settings, self.request_id).process(log)
        return WebhookReceiveResult(
            accepted=True,
            status_code=200,
            body=result.as_response(),
            log_id=log.id,
        )

    @staticmethod
    def _stored_headers(headers: Mapping[str, str]) -> Dict[str, str]:
        stored = {}
        for name, value in headers.items():
            key = str(name).lower()
            if key.startswith(STORED_HEADER_PREFIXES) and key not in stored:
                stored[key] = value
        return stored
