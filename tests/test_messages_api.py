"""
Tests for the message API: previews, templates, manual sends and retries
"""

from unittest.mock import patch

from ticketdesk.models.message import Message
from ticketdesk.services.email_gateway import EmailGateway
from ticketdesk.services.templates import seed_default_templates
from ticketdesk.services.twilio_gateway import GatewayResult, TwilioGateway


def _failed_message(db, **overrides):
    values = {
        "channel": "sms",
        "direction": "outbound",
        "recipient": "+393331234567",
        "content": "Your tickets are ready",
        "status": "failed",
        "retry_count": 1,
        "error_message": "Carrier unavailable",
    }
    values.update(overrides)
    message = Message(**values)
    db.add(message)
    db.commit()
    return message


class TestPreviewAndTemplates:
    def test_preview_every_channel(self, client, db, make_booking):
        seed_default_templates(db)
        booking = make_booking(reference_number="REF-1")

        response = client.post("/api/messages/preview", json={"booking_id": booking.id})

        assert response.status_code == 200
        previews = response.json()["previews"]
        assert set(previews) == {"whatsapp", "email", "sms"}
        assert "Maria Rossi" in previews["email"]["content"]

    def test_preview_unknown_booking(self, client):
        assert client.post("/api/messages/preview", json={"booking_id": "missing"}).status_code == 404

    def test_list_templates(self, client, db):
        seed_default_templates(db)

        data = client.get("/api/messages/templates", params={"channel": "email", "language": "en"}).json()

        assert data["templates"]
        assert {t["channel"] for t in data["templates"]} == {"email"}
        assert "en" in data["languages"]


class TestManualSend:
    @patch.object(EmailGateway, "send_email")
    def test_send_email(self, send_email, client, db):
        send_email.return_value = GatewayResult(success=True, external_id="sg-1")

        response = client.post("/api/messages/send", json={
            "channel": "email",
            "recipient": "maria@example.com",
            "content": "See you tomorrow at 9:00",
        })

        assert response.status_code == 200
        assert response.json()["success"] is True
        message = db.query(Message).one()
        assert message.status == "sent"
        assert message.subject

    def test_email_needs_address(self, client):
        response = client.post("/api/messages/send", json={
            "channel": "email",
            "recipient": "+393331234567",
            "content": "Hello",
        })
        assert response.status_code == 422

    @patch.object(TwilioGateway, "send_sms")
    def test_provider_failure_reported(self, send_sms, client, db):
        send_sms.return_value = GatewayResult(success=False, error="Invalid number")

        data = client.post("/api/messages/send", json={
            "channel": "sms",
            "recipient": "+393331234567",
            "content": "Hello",
        }).json()

        assert data["success"] is False
        assert db.query(Message).one().status == "failed"

    def test_unknown_booking(self, client):
        response = client.post("/api/messages/send", json={
            "channel": "sms",
            "recipient": "+393331234567",
            "content": "Hello",
            "booking_id": "missing",
        })
        assert response.status_code == 404


class TestRetry:
    @patch.object(TwilioGateway, "send_sms")
    def test_retry_one(self, send_sms, client, db):
        send_sms.return_value = GatewayResult(success=True, external_id="SM-RETRY")
        message = _failed_message(db)

        response = client.post(f"/api/messages/{message.id}/retry")

        assert response.status_code == 200
        assert response.json()["external_id"] == "SM-RETRY"
        db.refresh(message)
        assert message.status == "sent"

    def test_retry_unknown(self, client):
        assert client.post("/api/messages/missing/retry").status_code == 404

    def test_retry_not_failed(self, client, db):
        message = _failed_message(db, status="delivered")
        assert client.post(f"/api/messages/{message.id}/retry").status_code == 400

    def test_retry_at_ceiling(self, client, db, settings):
        message = _failed_message(db, retry_count=settings.message_max_retries)
        assert client.post(f"/api/messages/{message.id}/retry").status_code == 400

    @patch.object(TwilioGateway, "send_sms")
    def test_retry_failed_sweep(self, send_sms, client, db):
        send_sms.side_effect = [
            GatewayResult(success=True, external_id="SM-1"),
            GatewayResult(success=False, error="Carrier unavailable"),
        ]
        _failed_message(db)
        _failed_message(db, recipient="+393339999999")

        data = client.post("/api/messages/retry-failed", json={"channel": "sms"}).json()

        assert data["total"] == 2
        assert data["succeeded"] == 1
        assert data["failed"] == 1
