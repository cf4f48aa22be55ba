"""
Tests for channel selection and the multi-channel delivery engine

Tests cover:
- Channel plans for every contact profile
- WhatsApp, email and SMS sends with independent outcomes
- WhatsApp fallback to email
- Ticket preconditions
- Retries and the retry ceiling
- Provider status callbacks arriving out of order
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from ticketdesk.exceptions import ChannelUnavailableError, MessageRetryError, TicketPreconditionError
from ticketdesk.models.conversation import Conversation
from ticketdesk.models.download_token import DownloadToken
from ticketdesk.models.message import Message
from ticketdesk.services.channel_selector import plan_channels
from ticketdesk.services.delivery import DeliveryOutcome, MessageDeliveryEngine
from ticketdesk.services.templates import seed_default_templates
from ticketdesk.services.twilio_gateway import GatewayResult


@pytest.fixture
def twilio():
    gateway = MagicMock()
    gateway.has_whatsapp.return_value = True
    gateway.send_whatsapp.return_value = GatewayResult(success=True, external_id="SM-WA-1", provider_status="queued")
    gateway.send_sms.return_value = GatewayResult(success=True, external_id="SM-SMS-1", provider_status="queued")
    return gateway


@pytest.fixture
def email():
    gateway = MagicMock()
    gateway.send_email.return_value = GatewayResult(success=True, external_id="sg-1", provider_status="accepted")
    return gateway


@pytest.fixture
def engine(db, settings, store, twilio, email):
    seed_default_templates(db)
    return MessageDeliveryEngine(db, settings, twilio=twilio, email=email, store=store)


@pytest.fixture
def ticket_booking(make_booking):
    return make_booking(reference_number="REF-123")


class TestPlanChannels:
    def test_whatsapp_capable_phone(self):
        assert plan_channels(True, True, True).channels == ["whatsapp"]

    def test_email_with_sms_alert(self):
        assert plan_channels(True, True, False).channels == ["email", "sms"]

    def test_email_only(self):
        assert plan_channels(False, True, False).channels == ["email"]

    def test_phone_without_whatsapp_or_email(self):
        assert plan_channels(True, False, False).is_empty

    def test_nothing(self):
        plan = plan_channels(False, False, False)
        assert plan.is_empty
        assert plan.primary is None


class TestSendTicket:
    def test_whatsapp_send_uses_short_links(self, db, engine, twilio, email, ticket_booking, make_attachment):
        attachment = make_attachment(ticket_booking)

        result = engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.SUCCESS
        assert [a.channel for a in result.attempts] == ["whatsapp"]
        email.send_email.assert_not_called()

        kwargs = twilio.send_whatsapp.call_args.kwargs
        token = db.query(DownloadToken).one()
        assert kwargs["media_urls"] == [f"https://tickets.example.com/t/{token.token}.pdf"]
        assert "REF-123" in kwargs["body"]

        message = db.query(Message).one()
        assert message.status == "sent"
        assert message.external_id == "SM-WA-1"
        assert message.attachment_ids == [attachment.id]
        db.refresh(ticket_booking)
        db.refresh(attachment)
        assert ticket_booking.tickets_sent_at is not None
        assert attachment.message_id == message.id
        assert db.query(Conversation).one().phone_number == "+393331234567"

    def test_email_and_sms_when_no_whatsapp(self, db, engine, twilio, email, ticket_booking, make_attachment):
        twilio.has_whatsapp.return_value = False
        attachment = make_attachment(ticket_booking)

        result = engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.SUCCESS
        assert [a.channel for a in result.attempts] == ["email", "sms"]

        to, subject, _, files = email.send_email.call_args.args
        assert to == "maria@example.com"
        assert "Uffizi Gallery Tour" in subject
        assert files[0].content == b"%PDF-1.4 test ticket"

        sms_body = twilio.send_sms.call_args.args[1]
        assert "maria@example.com" in sms_body
        sms = db.query(Message).filter_by(channel="sms").one()
        assert sms.attachment_ids is None

    def test_partial_outcome(self, db, engine, twilio, ticket_booking, make_attachment):
        twilio.has_whatsapp.return_value = False
        twilio.send_sms.return_value = GatewayResult(success=False, error="Error 21211: invalid number")
        attachment = make_attachment(ticket_booking)

        result = engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.PARTIAL
        assert result.success is True
        sms = db.query(Message).filter_by(channel="sms").one()
        assert sms.status == "failed"
        assert sms.error_message == "Error 21211: invalid number"
        db.refresh(ticket_booking)
        assert ticket_booking.tickets_sent_at is not None

    def test_all_channels_fail(self, db, engine, email, make_booking, make_attachment):
        booking = make_booking(reference_number="REF-1", customer_phone=None)
        email.send_email.return_value = GatewayResult(success=False, error="SendGrid 400")
        attachment = make_attachment(booking)

        result = engine.send_ticket(booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.FAILED
        message = db.query(Message).one()
        assert message.status == "failed"
        assert message.retry_count == 1
        db.refresh(booking)
        assert booking.tickets_sent_at is None

    def test_no_channel(self, db, engine, make_booking, make_attachment):
        booking = make_booking(reference_number="REF-1", customer_phone=None, customer_email=None)
        attachment = make_attachment(booking)

        result = engine.send_ticket(booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.NO_CHANNEL
        assert db.query(Message).count() == 0

    def test_whatsapp_failure_falls_back_to_email(self, db, engine, twilio, email, ticket_booking, make_attachment):
        twilio.send_whatsapp.return_value = GatewayResult(success=False, error="Error 63016: outside window")
        attachment = make_attachment(ticket_booking)

        result = engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        assert result.fallback_used is True
        assert [a.channel for a in result.attempts] == ["whatsapp", "email", "sms"]
        assert result.outcome == DeliveryOutcome.PARTIAL
        email.send_email.assert_called_once()

    def test_fallback_disabled(self, db, settings, engine, twilio, email, ticket_booking, make_attachment):
        settings.whatsapp_fallback_enabled = False
        twilio.send_whatsapp.return_value = GatewayResult(success=False, error="boom")
        attachment = make_attachment(ticket_booking)

        result = engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        assert result.outcome == DeliveryOutcome.FAILED
        email.send_email.assert_not_called()

    def test_tickets_sent_at_set_once(self, db, engine, ticket_booking, make_attachment):
        attachment = make_attachment(ticket_booking)
        first_sent = datetime(2026, 1, 1, 12, 0)
        ticket_booking.tickets_sent_at = first_sent
        db.commit()

        engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])

        db.refresh(ticket_booking)
        assert ticket_booking.tickets_sent_at == first_sent


class TestTicketPreconditions:
    def test_reference_number_required(self, engine, make_booking, make_attachment):
        booking = make_booking()
        attachment = make_attachment(booking)
        with pytest.raises(TicketPreconditionError):
            engine.send_ticket(booking, attachment_ids=[attachment.id])

    def test_attachment_required(self, engine, ticket_booking):
        with pytest.raises(TicketPreconditionError):
            engine.send_ticket(ticket_booking, attachment_ids=[])

    def test_attachment_must_belong_to_booking(self, engine, ticket_booking, make_booking, make_attachment):
        other = make_attachment(make_booking())
        with pytest.raises(TicketPreconditionError):
            engine.send_ticket(ticket_booking, attachment_ids=[other.id])

    def test_audio_guide_needs_credentials(self, engine, make_booking, make_attachment):
        booking = make_booking(reference_number="REF-1", has_audio_guide=True)
        attachment = make_attachment(booking)
        with pytest.raises(TicketPreconditionError):
            engine.send_ticket(booking, attachment_ids=[attachment.id])

    def test_cancelled_booking_refused(self, db, engine, ticket_booking, make_attachment):
        attachment = make_attachment(ticket_booking)
        ticket_booking.cancel(datetime.utcnow())
        db.commit()
        with pytest.raises(TicketPreconditionError):
            engine.send_ticket(ticket_booking, attachment_ids=[attachment.id])


class TestRetries:
    def _failed_email(self, engine, booking, attachment, retry_count=1):
        message = engine.messages.create(
            booking_id=booking.id,
            channel="email",
            recipient=booking.customer_email,
            subject="Your tickets",
            content="Tickets attached",
            attachment_ids=[attachment.id],
            status="failed",
            retry_count=retry_count,
            failed_at=datetime.utcnow(),
        )
        engine.db.commit()
        return message

    def test_retry_failed_message(self, db, engine, email, ticket_booking, make_attachment):
        attachment = make_attachment(ticket_booking)
        message = self._failed_email(engine, ticket_booking, attachment)

        attempt = engine.retry_message(message.id)

        assert attempt.success is True
        db.refresh(message)
        db.refresh(ticket_booking)
        assert message.status == "sent"
        assert ticket_booking.tickets_sent_at is not None
        assert email.send_email.call_args.args[3][0].filename == "ticket.pdf"

    def test_retry_refused_for_sent_message(self, db, engine, ticket_booking, make_attachment):
        message = self._failed_email(engine, ticket_booking, make_attachment(ticket_booking))
        message.status = "sent"
        db.commit()
        with pytest.raises(MessageRetryError):
            engine.retry_message(message.id)

    def test_retry_refused_at_ceiling(self, settings, engine, ticket_booking, make_attachment):
        message = self._failed_email(
            engine, ticket_booking, make_attachment(ticket_booking), retry_count=settings.message_max_retries
        )
        with pytest.raises(MessageRetryError):
            engine.retry_message(message.id)

    def test_failed_retry_counts(self, db, engine, email, ticket_booking, make_attachment):
        email.send_email.return_value = GatewayResult(success=False, error="SendGrid 503")
        message = self._failed_email(engine, ticket_booking, make_attachment(ticket_booking))

        attempt = engine.retry_message(message.id)

        assert attempt.success is False
        db.refresh(message)
        assert message.retry_count == 2

    def test_retry_failed_sweep(self, settings, engine, ticket_booking, make_attachment):
        attachment = make_attachment(ticket_booking)
        self._failed_email(engine, ticket_booking, attachment)
        self._failed_email(engine, ticket_booking, attachment, retry_count=settings.message_max_retries)

        summary = engine.retry_failed()

        assert summary["total"] == 1
        assert summary["succeeded"] == 1


class TestStatusCallbacks:
    def _sent_message(self, engine, booking):
        message = engine.send_manual("sms", booking.customer_phone, "Hello")
        return engine.messages.get(message.message_id)

    def test_delivered_then_read(self, engine, ticket_booking):
        message = self._sent_message(engine, ticket_booking)

        assert engine.handle_status_callback(message.external_id, "delivered") is True
        assert engine.handle_status_callback(message.external_id, "read") is True
        assert message.status == "read"
        assert message.delivered_at is not None

    def test_late_callback_never_moves_backwards(self, engine, ticket_booking):
        message = self._sent_message(engine, ticket_booking)
        engine.handle_status_callback(message.external_id, "delivered")

        assert engine.handle_status_callback(message.external_id, "sent") is False
        assert message.status == "delivered"

    def test_failure_callback_records_error(self, engine, ticket_booking):
        message = self._sent_message(engine, ticket_booking)

        engine.handle_status_callback(message.external_id, "undelivered", "30008", "Unknown error")

        assert message.status == "failed"
        assert message.error_message == "Error 30008: Unknown error"

    def test_late_sending_callback_does_not_revive_failed(self, engine, settings, ticket_booking):
        message = self._sent_message(engine, ticket_booking)
        engine.handle_status_callback(message.external_id, "undelivered", "30008", "Unknown error")

        assert engine.handle_status_callback(message.external_id, "sending") is False
        assert engine.handle_status_callback(message.external_id, "queued") is False
        assert message.status == "failed"
        assert message.error_message == "Error 30008: Unknown error"
        assert message.can_retry(settings.message_max_retries)

    def test_model_ignores_queued_callback_when_failed(self):
        message = Message(status="failed", retry_count=1, error_message="Error 30008: Unknown error")

        assert message.apply_provider_status("accepted", None, 3) is False
        assert message.status == "failed"
        assert message.error_message == "Error 30008: Unknown error"

        message.mark_queued()
        assert message.status == "queued"

    def test_unknown_message(self, engine):
        assert engine.handle_status_callback("SM-unknown", "delivered") is False


class TestManualAndReplies:
    def test_detect_channel(self, engine, twilio, ticket_booking):
        twilio.has_whatsapp.return_value = False
        detection = engine.detect_channel(ticket_booking)
        assert detection["primary"] == "email"
        assert detection["fallback"] == "sms"
        assert detection["whatsapp_capable"] is False

    def test_preview_renders_every_channel(self, engine, ticket_booking):
        previews = engine.preview(ticket_booking, "it")
        assert set(previews) == {"whatsapp", "email", "sms"}
        assert "/t/XXXXXXXX.pdf" in previews["whatsapp"]["content"]
        assert previews["email"]["subject"].startswith("Your Uffizi Gallery Tour tickets")

    def test_reply_refused_when_window_closed(self, db, engine, twilio):
        engine.tracker.record_inbound(
            "whatsapp:+393331234567", "Hi", external_id="SM-IN-1",
            received_at=datetime.utcnow() - timedelta(hours=30),
        )
        conversation = db.query(Conversation).one()

        with pytest.raises(ChannelUnavailableError):
            engine.send_reply(conversation, "Hello again")
        twilio.send_whatsapp.assert_not_called()

    def test_reply_inside_window(self, db, engine, twilio):
        engine.tracker.record_inbound("whatsapp:+393331234567", "Hi", external_id="SM-IN-2")
        conversation = db.query(Conversation).one()

        attempt = engine.send_reply(conversation, "Hello!")

        assert attempt.success is True
        assert twilio.send_whatsapp.call_args.args[0] == "+393331234567"
        assert db.query(Message).filter_by(direction="outbound").one().conversation_id == conversation.id
