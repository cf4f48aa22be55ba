"""
Message Delivery Engine

Sends a booking's tickets over the planned channels:
- WhatsApp: rendered text plus short download links as media
- Email: rendered text with the PDFs attached
- SMS: alert only ("tickets were emailed"), never the documents

Every attempt is its own Message row (pending -> queued -> sent, or
failed with the provider error). Channels succeed or fail independently
and the caller gets the per-channel detail plus an aggregate outcome.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import (
    BlobNotFoundError,
    ChannelUnavailableError,
    InvalidTransitionError,
    MessageRetryError,
    NotFoundError,
    TemplateRenderError,
    TicketPreconditionError,
    UpstreamError,
)
from ..models.booking import Booking
from ..models.conversation import Conversation
from ..models.message import Message, MessageChannel, MessageDirection
from ..models.message_attachment import MessageAttachment
from ..repositories.booking_repository import BookingRepository
from ..repositories.message_repository import MessageRepository
from ..utils.logging_config import get_logger
from .channel_selector import ChannelPlan, ChannelSelector, plan_channels
from .conversation_tracker import ConversationTracker
from .download_tokens import DownloadTokenService
from .email_gateway import EmailAttachment, EmailGateway
from .storage import BlobStore, get_blob_store
from .templates import RenderedMessage, TemplateRenderer, booking_variables, render_text
from .twilio_gateway import GatewayResult, TwilioGateway

logger = get_logger(__name__)

DEFAULT_EMAIL_SUBJECT = "Your tickets"
PREVIEW_DOWNLOAD_URL = "/t/XXXXXXXX.pdf"


class DeliveryOutcome(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NO_CHANNEL = "no_channel"


@dataclass
class ChannelAttempt:
    channel: str
    message_id: Optional[str]
    success: bool
    error: Optional[str] = None
    external_id: Optional[str] = None

    def as_dict(self) -> Dict:
        return {
            "channel": self.channel,
            "message_id": self.message_id,
            "success": self.success,
            "error": self.error,
            "external_id": self.external_id,
        }


@dataclass
class DeliveryResult:
    outcome: DeliveryOutcome
    attempts: List[ChannelAttempt] = field(default_factory=list)
    plan: ChannelPlan = field(default_factory=ChannelPlan)
    fallback_used: bool = False

    @property
    def success(self) -> bool:
        return self.outcome in (DeliveryOutcome.SUCCESS, DeliveryOutcome.PARTIAL)

    def as_dict(self) -> Dict:
        return {
            "outcome": self.outcome.value,
            "success": self.success,
            "channels": self.plan.channels,
            "reason": self.plan.reason,
            "fallback_used": self.fallback_used,
            "attempts": [a.as_dict() for a in self.attempts],
        }


def outcome_for(attempts: List[ChannelAttempt]) -> DeliveryOutcome:
    if not attempts:
        return DeliveryOutcome.NO_CHANNEL
    succeeded = sum(1 for a in attempts if a.success)
    if succeeded == len(attempts):
        return DeliveryOutcome.SUCCESS
    if succeeded:
        return DeliveryOutcome.PARTIAL
    return DeliveryOutcome.FAILED


class MessageDeliveryEngine:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        twilio: Optional[TwilioGateway] = None,
        email: Optional[EmailGateway] = None,
        store: Optional[BlobStore] = None,
        request_id: Optional[str] = None,
    ):
        self.db = db
        self.settings = settings
        self.twilio = twilio or TwilioGateway(settings)
        self.email = email or EmailGateway(settings)
        self.store = store or get_blob_store(settings)
        self.request_id = request_id or "worker"
        self.selector = ChannelSelector(self.twilio)
        self.templates = TemplateRenderer(db)
        self.tokens = DownloadTokenService(db, settings)
        self.tracker = ConversationTracker(db)
        self.messages = MessageRepository(db)
        self.bookings = BookingRepository(db)
        self.max_retries = settings.message_max_retries

    # ==================
    # Ticket sends
    # ==================

    def _ticket_attachments(self, booking: Booking, attachment_ids: List[str]) -> List[MessageAttachment]:
        if booking.is_cancelled:
            raise TicketPreconditionError("Booking is cancelled")
        if not booking.reference_number:
            raise TicketPreconditionError("Booking has no ticket reference number")
        if booking.has_audio_guide and not booking.has_audio_credentials:
            raise TicketPreconditionError("Booking has an audio guide but no audio guide credentials")

        ids = list(dict.fromkeys(attachment_ids or []))
        if not ids:
            raise TicketPreconditionError("At least one ticket attachment is required")
        attachments = self.db.query(MessageAttachment).filter(
            MessageAttachment.id.in_(ids),
            MessageAttachment.booking_id == booking.id,
        ).order_by(MessageAttachment.created_at.asc()).all()
        if len(attachments) != len(ids):
            raise TicketPreconditionError("Attachments must exist and belong to this booking")
        return attachments

    def send_ticket(
        self,
        booking: Booking,
        language: str = "en",
        attachment_ids: Optional[List[str]] = None,
        custom: Optional[Dict] = None,
    ) -> DeliveryResult:
        """
        Send tickets over the planned channels.

        When WhatsApp was the only channel and it failed, the tickets
        are re-sent by email (plus SMS alert) if fallback is enabled.
        """
        attachments = self._ticket_attachments(booking, attachment_ids or [])
        plan = self.selector.plan(booking)
        if plan.is_empty:
            logger.warning(f"[{self.request_id}] No channel for booking {booking.bokun_booking_id}: {plan.reason}")
            return DeliveryResult(outcome=DeliveryOutcome.NO_CHANNEL, plan=plan)

        attempts = self._send_channels(booking, plan.channels, language, attachments, custom)

        fallback_used = False
        whatsapp_only = plan.channels == [MessageChannel.WHATSAPP.value]
        if whatsapp_only and not attempts[0].success and self.settings.whatsapp_fallback_enabled:
            fallback = plan_channels(bool(booking.customer_phone), bool(booking.customer_email), False)
            if fallback.channels:
                logger.info(
                    f"[{self.request_id}] WhatsApp failed for {booking.bokun_booking_id}, "
                    f"falling back to {fallback.channels}"
                )
                attempts += self._send_channels(booking, fallback.channels, language, attachments, custom)
                plan = ChannelPlan(plan.channels + fallback.channels, plan.whatsapp_capable, fallback.reason)
                fallback_used = True

        outcome = outcome_for(attempts)
        if any(a.success for a in attempts):
            self._mark_tickets_sent(booking)
        self.db.commit()

        logger.log_with_context(
            logging.INFO if outcome == DeliveryOutcome.SUCCESS else logging.WARNING,
            f"[{self.request_id}] Tickets for {booking.bokun_booking_id}: {outcome.value}",
            entity_type="booking",
            entity_id=booking.id,
            channels=[a.channel for a in attempts],
            failed=[a.channel for a in attempts if not a.success],
        )
        return DeliveryResult(outcome=outcome, attempts=attempts, plan=plan, fallback_used=fallback_used)

    def _send_channels(
        self,
        booking: Booking,
        channels: List[str],
        language: str,
        attachments: List[MessageAttachment],
        custom: Optional[Dict],
    ) -> List[ChannelAttempt]:
        attempts = []
        for channel in channels:
            try:
                attempts.append(self._send_ticket_on(booking, channel, language, attachments, custom))
            except (TemplateRenderError, UpstreamError) as e:
                # Nothing was created for this channel
                attempts.append(ChannelAttempt(channel=channel, message_id=None, success=False, error=str(e)))
        return attempts

    def _render(
        self,
        booking: Booking,
        channel: str,
        language: str,
        download_url: Optional[str],
        custom: Optional[Dict],
    ) -> RenderedMessage:
        if custom and custom.get("content") and channel != MessageChannel.SMS.value:
            variables = booking_variables(booking, download_url)
            return RenderedMessage(
                content=render_text(custom["content"], variables),
                subject=render_text(custom.get("subject"), variables) or None,
            )
        return self.templates.render_for_booking(booking, channel, language, download_url)

    def _send_ticket_on(
        self,
        booking: Booking,
        channel: str,
        language: str,
        attachments: List[MessageAttachment],
        custom: Optional[Dict],
    ) -> ChannelAttempt:
        fields = {
            "booking_id": booking.id,
            "channel": channel,
            "attachment_ids": [a.id for a in attachments],
        }

        if channel == MessageChannel.WHATSAPP.value:
            urls = [self.tokens.short_url_for(a) for a in attachments]
            rendered = self._render(booking, channel, language, urls[0], custom)
            fields.update(recipient=booking.customer_phone, media_urls=urls)
            if rendered.content_sid:
                fields.update(
                    content_sid=rendered.content_sid,
                    template_variables=booking_variables(booking, urls[0]),
                )
        elif channel == MessageChannel.EMAIL.value:
            rendered = self._render(booking, channel, language, None, custom)
            fields.update(recipient=booking.customer_email, subject=rendered.subject or DEFAULT_EMAIL_SUBJECT)
        else:
            rendered = self._render(booking, channel, language, None, None)
            fields.update(recipient=booking.customer_phone, attachment_ids=None)

        message = self.messages.create(
            content=rendered.content,
            template_id=rendered.template_id,
            sender_name=self.settings.mail_from_name,
            **fields
        )
        for attachment in attachments:
            if attachment.message_id is None and fields["attachment_ids"]:
                attachment.message_id = message.id
        self.tracker.record_outbound(message)
        return self._deliver(message)

    def _mark_tickets_sent(self, booking: Booking):
        now = datetime.utcnow()
        if booking.tickets_sent_at is None:
            booking.tickets_sent_at = now
        if booking.has_audio_guide and booking.audio_guide_sent_at is None:
            booking.audio_guide_sent_at = now

    # ==================
    # Provider dispatch
    # ==================

    def _email_attachments(self, message: Message) -> List[EmailAttachment]:
        ids = message.attachment_ids or []
        if not ids:
            return []
        rows = self.db.query(MessageAttachment).filter(MessageAttachment.id.in_(ids)).all()
        return [
            EmailAttachment(filename=row.original_name, content=self.store.get(row.storage_path), mime_type=row.mime_type)
            for row in rows
        ]

    def _dispatch(self, message: Message) -> GatewayResult:
        if message.channel == MessageChannel.WHATSAPP.value:
            return self.twilio.send_whatsapp(
                message.recipient,
                body=message.content,
                media_urls=message.media_urls,
                content_sid=message.content_sid,
                content_variables=message.template_variables,
            )
        if message.channel == MessageChannel.SMS.value:
            return self.twilio.send_sms(message.recipient, message.content)
        try:
            files = self._email_attachments(message)
        except (BlobNotFoundError, UpstreamError) as e:
            return GatewayResult(success=False, error=str(e))
        return self.email.send_email(message.recipient, message.subject or DEFAULT_EMAIL_SUBJECT, message.content, files)

    def _deliver(self, message: Message) -> ChannelAttempt:
        """One provider attempt for an existing pending or failed message."""
        old_status = message.status
        message.mark_queued()
        result = self._dispatch(message)
        if result.success:
            message.mark_sent(result.external_id)
        else:
            message.mark_failed(result.error, self.max_retries)
        self.db.flush()
        logger.message_status_changed(message.id, message.channel, old_status, message.status)
        return ChannelAttempt(
            channel=message.channel,
            message_id=message.id,
            success=result.success,
            error=None if result.success else message.error_message,
            external_id=message.external_id,
        )

    # ==================
    # Retries
    # ==================

    def retry_message(self, message_id: str) -> ChannelAttempt:
        """Retry one failed message on its own channel with its stored content."""
        message = self.messages.get(message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        if message.direction != MessageDirection.OUTBOUND.value:
            raise MessageRetryError("Inbound messages cannot be retried")
        if not message.can_retry(self.max_retries):
            raise MessageRetryError(
                f"Message is {message.status} with {message.retry_count}/{self.max_retries} attempts"
            )

        attempt = self._deliver(message)
        if attempt.success and message.booking_id and message.attachment_ids:
            booking = self.bookings.get(message.booking_id, include_cancelled=True)
            if booking:
                self._mark_tickets_sent(booking)
        self.db.commit()
        logger.info(f"[{self.request_id}] Retry of message {message_id}: {'sent' if attempt.success else 'failed'}")
        return attempt

    def retry_failed(self, channel: Optional[str] = None, limit: Optional[int] = None) -> Dict:
        candidates = self.messages.retryable(
            self.max_retries, channel=channel, limit=limit or self.settings.message_retry_batch_size
        )
        results = []
        for message in candidates:
            try:
                attempt = self.retry_message(message.id)
            except (MessageRetryError, InvalidTransitionError) as e:
                self.db.rollback()
                attempt = ChannelAttempt(channel=message.channel, message_id=message.id, success=False, error=str(e))
            results.append(attempt)

        succeeded = sum(1 for a in results if a.success)
        if results:
            logger.info(f"[{self.request_id}] Message retry sweep: {succeeded}/{len(results)} sent")
        return {
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": [a.as_dict() for a in results],
        }

    # ==================
    # Manual messages and replies
    # ==================

    def send_manual(
        self,
        channel: str,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> ChannelAttempt:
        channel = MessageChannel(channel).value
        if channel == MessageChannel.EMAIL.value and not subject:
            subject = DEFAULT_EMAIL_SUBJECT
        message = self.messages.create(
            booking_id=booking_id,
            channel=channel,
            recipient=recipient,
            subject=subject if channel == MessageChannel.EMAIL.value else None,
            content=content,
            sender_name=self.settings.mail_from_name,
        )
        self.tracker.record_outbound(message)
        attempt = self._deliver(message)
        self.db.commit()
        return attempt

    def send_reply(self, conversation: Conversation, content: str) -> ChannelAttempt:
        window = self.tracker.whatsapp_window(conversation)
        if window["applies"] and not window["open"]:
            raise ChannelUnavailableError("WhatsApp 24-hour reply window is closed; use an approved template")
        attempt = self.send_manual(
            conversation.channel,
            conversation.phone_number,
            content,
            booking_id=conversation.booking_id,
        )
        return attempt

    # ==================
    # Read side
    # ==================

    def detect_channel(self, booking: Booking) -> Dict:
        return self.selector.describe(self.selector.plan(booking))

    def preview(self, booking: Booking, language: str = "en") -> Dict:
        download_url = (self.settings.public_base_url or "").rstrip("/") + PREVIEW_DOWNLOAD_URL
        previews = {}
        for channel in (MessageChannel.WHATSAPP.value, MessageChannel.EMAIL.value, MessageChannel.SMS.value):
            try:
                rendered = self.templates.render_for_booking(
                    booking, channel, language, download_url if channel == MessageChannel.WHATSAPP.value else None
                )
            except TemplateRenderError as e:
                previews[channel] = {"error": str(e)}
                continue
            previews[channel] = {"subject": rendered.subject, "content": rendered.content}
        return previews

    def history(self, booking: Booking) -> List[Message]:
        return self.messages.for_booking(booking.id)

    def handle_status_callback(
        self,
        external_id: str,
        provider_status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        message = self.messages.get_by_external_id(external_id) if external_id else None
        if message is None:
            logger.info(f"Status callback for unknown message {external_id} ({provider_status}) ignored")
            return False

        error = None
        if error_code:
            error = f"Error {error_code}: {error_message or 'Unknown error'}"
        old_status = message.status
        changed = message.apply_provider_status(provider_status, error, self.max_retries)
        if changed:
            self.db.commit()
            logger.message_status_changed(message.id, message.channel, old_status, message.status)
        return changed
