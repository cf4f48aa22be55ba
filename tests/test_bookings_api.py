"""
Tests for the booking API: CRUD, sync triggers, attachments and ticket sends
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

from ticketdesk.exceptions import JobAlreadyRunningError
from ticketdesk.models.booking import Booking
from ticketdesk.models.message_attachment import MessageAttachment
from ticketdesk.services.email_gateway import EmailGateway
from ticketdesk.services.reconciliation import ImportReport, ReconciliationReport
from ticketdesk.services.templates import seed_default_templates
from ticketdesk.services.ticket_reminder import to_local
from ticketdesk.services.twilio_gateway import GatewayResult, TwilioGateway

PDF = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n"


class TestBookingCrud:
    def test_create_booking(self, client, db):
        response = client.post("/api/bookings", json={
            "bokun_booking_id": "MAN-001",
            "customer_name": "Anna <script>alert(1)</script>Verdi",
            "tour_date": "2026-12-01T10:00:00",
            "pax": 2,
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending_ticket"
        assert "<script>" not in data["customer_name"]

    def test_duplicate_code_conflict(self, client, make_booking):
        booking = make_booking()
        response = client.post("/api/bookings", json={
            "bokun_booking_id": booking.bokun_booking_id,
            "customer_name": "Someone",
            "tour_date": "2026-12-01T10:00:00",
        })
        assert response.status_code == 409

    def test_list_hides_cancelled_by_default(self, client, db, make_booking):
        make_booking()
        cancelled = make_booking()
        cancelled.cancel(datetime.utcnow())
        db.commit()

        assert client.get("/api/bookings").json()["total"] == 1
        assert client.get("/api/bookings", params={"include_cancelled": True}).json()["total"] == 2

    def test_list_search(self, client, make_booking):
        make_booking(customer_name="Giulia Conti")
        make_booking(customer_name="Paolo Neri")

        data = client.get("/api/bookings", params={"search": "conti"}).json()

        assert data["total"] == 1
        assert data["items"][0]["customer_name"] == "Giulia Conti"

    def test_list_search_covers_participant_names(self, client, make_booking):
        make_booking(customer_name="Maria Rossi", participants=[
            {"name": "Maria Rossi", "category": "Adult"},
            {"name": "Luca Bianchi", "category": "Adult"},
        ])
        make_booking(customer_name="Paolo Neri", participants=[{"name": "Paolo Neri", "category": "Adult"}])

        data = client.get("/api/bookings", params={"search": "bianchi"}).json()

        assert data["total"] == 1
        assert data["items"][0]["customer_name"] == "Maria Rossi"

    def test_get_not_found(self, client):
        assert client.get("/api/bookings/missing").status_code == 404

    def test_update_status_and_wizard(self, client, make_booking):
        booking = make_booking()

        response = client.put(f"/api/bookings/{booking.id}", json={
            "status": "ticket_purchased",
            "reference_number": "REF-9",
            "wizard_last_step": 2,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ticket_purchased"
        assert data["reference_number"] == "REF-9"
        assert data["wizard_started_at"] is not None

    def test_wizard_abandon_and_resume(self, client, make_booking):
        booking = make_booking()

        abandoned = client.post(f"/api/bookings/{booking.id}/wizard-progress", json={"action": "abandon", "step": 3})
        assert abandoned.status_code == 200
        assert abandoned.json()["wizard_abandoned_at"] is not None

        resumed = client.post(f"/api/bookings/{booking.id}/wizard-progress", json={"action": "progress", "step": 4})
        data = resumed.json()
        assert data["wizard_abandoned_at"] is None
        assert data["wizard_last_step"] == 4
        assert data["wizard_started_at"] is not None

    def test_wizard_unknown_action(self, client, make_booking):
        booking = make_booking()
        response = client.post(f"/api/bookings/{booking.id}/wizard-progress", json={"action": "pause"})
        assert response.status_code == 422

    def test_update_rejects_unknown_status(self, client, make_booking):
        booking = make_booking()
        response = client.put(f"/api/bookings/{booking.id}", json={"status": "shipped"})
        assert response.status_code == 422

    def test_cancel_is_soft(self, client, db, make_booking):
        booking = make_booking()

        response = client.delete(f"/api/bookings/{booking.id}")

        assert response.status_code == 200
        db.refresh(booking)
        assert booking.is_cancelled
        assert db.query(Booking).count() == 1
        assert client.get(f"/api/bookings/{booking.id}").json()["cancelled_at"] is not None

    def test_stats(self, client, make_booking):
        make_booking(tour_date=datetime.utcnow() + timedelta(days=2))
        data = client.get("/api/bookings/stats").json()
        assert data["total"] == 1
        assert data["upcoming"] == 1


class TestGroupedView:
    def _local_today(self):
        return to_local(datetime.utcnow(), ZoneInfo("Europe/Rome")).date()

    def test_groups_by_local_day(self, client, make_booking):
        today = self._local_today()
        tomorrow = today + timedelta(days=1)
        make_booking(tour_date=datetime(today.year, today.month, today.day, 8, 0), pax=2)
        make_booking(tour_date=datetime(today.year, today.month, today.day, 12, 0), pax=3,
                     status="ticket_purchased")
        make_booking(tour_date=datetime(tomorrow.year, tomorrow.month, tomorrow.day, 9, 0), pax=1,
                     status="ticket_purchased", wizard_abandoned_at=datetime.utcnow())

        response = client.get("/api/bookings/grouped")

        assert response.status_code == 200
        data = response.json()
        assert data["total_days"] == 2
        assert data["total_bookings"] == 3
        first, second = data["grouped_bookings"]
        assert first["date"] == today.isoformat()
        assert first["label"] == "Today"
        assert first["is_today"] is True
        assert first["total_pax"] == 5
        assert first["pending_count"] == 1
        assert second["label"] == "Tomorrow"
        assert second["pending_count"] == 1
        assert [b["pax"] for b in first["bookings"]] == [2, 3]

    def test_default_window_skips_old_bookings(self, client, make_booking):
        make_booking(tour_date=datetime.utcnow() - timedelta(days=45))
        make_booking(tour_date=datetime.utcnow() + timedelta(days=3))

        data = client.get("/api/bookings/grouped").json()

        assert data["total_bookings"] == 1

    def test_search_and_date_from(self, client, make_booking):
        make_booking(tour_date=datetime.utcnow() - timedelta(days=45), customer_name="Giulia Conti")
        make_booking(tour_date=datetime.utcnow() + timedelta(days=3), customer_name="Paolo Neri")

        data = client.get("/api/bookings/grouped", params={
            "date_from": (datetime.utcnow() - timedelta(days=60)).isoformat(),
            "search": "conti",
        }).json()

        assert data["total_bookings"] == 1
        assert data["grouped_bookings"][0]["bookings"][0]["customer_name"] == "Giulia Conti"


class TestSyncTriggers:
    def test_manual_sync(self, client, scheduler):
        report = ReconciliationReport(fetched=3, synced=2)
        report.finished_at = datetime.utcnow()
        scheduler.run_or_raise.return_value = report

        response = client.post("/api/bookings/sync", json={"limit": 10})

        assert response.status_code == 200
        assert response.json()["message"] == "Sync completed"
        assert response.json()["report"]["synced"] == 2
        assert scheduler.run_or_raise.call_args.args[0] == "reconciliation"

    def test_manual_sync_aborted(self, client, scheduler):
        scheduler.run_or_raise.return_value = ReconciliationReport(aborted=True)
        response = client.post("/api/bookings/sync")
        assert response.json()["message"] == "Sync aborted: Bokun search failed"

    def test_concurrent_sync_conflict(self, client, scheduler):
        scheduler.run_or_raise.side_effect = JobAlreadyRunningError("reconciliation")
        assert client.post("/api/bookings/sync").status_code == 409

    def test_auto_sync_starts_background_run(self, client, scheduler, make_booking):
        make_booking()
        scheduler.last_finished_at.return_value = None
        scheduler.is_running.return_value = False

        response = client.post("/api/bookings/auto-sync")

        assert response.status_code == 200
        data = response.json()
        assert data["sync_triggered"] is True
        assert data["pending_participants"] == 1
        scheduler.run_exclusive.assert_called_once_with("reconciliation")

    def test_auto_sync_already_running(self, client, scheduler, make_booking):
        make_booking()
        scheduler.last_finished_at.return_value = None
        scheduler.is_running.return_value = True

        data = client.post("/api/bookings/auto-sync").json()

        assert data["sync_triggered"] is False
        scheduler.run_exclusive.assert_not_called()

    def test_import_date_order(self, client):
        response = client.post("/api/bookings/import", json={
            "start_date": "2026-02-01T00:00:00",
            "end_date": "2026-01-01T00:00:00",
        })
        assert response.status_code == 400

    def test_import(self, client, scheduler):
        scheduler.run_or_raise.return_value = ImportReport(pages=1, imported=4)

        response = client.post("/api/bookings/import", json={
            "start_date": "2026-01-01T00:00:00",
            "end_date": "2026-01-31T00:00:00",
        })

        assert response.status_code == 200
        assert response.json()["report"]["imported"] == 4
        assert scheduler.run_or_raise.call_args.args[0] == "historical_import"


class TestAttachments:
    def test_upload_pdf(self, client, db, store, make_booking):
        booking = make_booking()

        response = client.post(
            f"/api/bookings/{booking.id}/attachments",
            files={"file": ("tickets.pdf", PDF, "application/pdf")},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["original_name"] == "tickets.pdf"
        assert data["size"] == len(PDF)
        attachment = db.query(MessageAttachment).one()
        assert attachment.storage_path.startswith(f"attachments/{booking.id}/")
        assert store.get(attachment.storage_path) == PDF

    def test_upload_rejects_non_pdf(self, client, make_booking):
        booking = make_booking()
        response = client.post(
            f"/api/bookings/{booking.id}/attachments",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert response.status_code == 400

    def test_upload_rejects_fake_pdf(self, client, make_booking):
        booking = make_booking()
        response = client.post(
            f"/api/bookings/{booking.id}/attachments",
            files={"file": ("fake.pdf", b"MZ\x90\x00", "application/pdf")},
        )
        assert response.status_code == 400

    def test_list_download_and_delete(self, client, db, make_booking, make_attachment):
        booking = make_booking()
        attachment = make_attachment(booking)

        listed = client.get(f"/api/bookings/{booking.id}/attachments").json()
        assert [a["id"] for a in listed] == [attachment.id]

        download = client.get(f"/api/attachments/{attachment.id}/download")
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 test ticket"
        assert "attachment" in download.headers["content-disposition"]

        assert client.delete(f"/api/attachments/{attachment.id}").status_code == 200
        assert db.query(MessageAttachment).count() == 0

    def test_sent_attachment_cannot_be_deleted(self, client, db, make_booking, make_attachment):
        attachment = make_attachment(make_booking())
        attachment.message_id = "some-message"
        db.commit()

        assert client.delete(f"/api/attachments/{attachment.id}").status_code == 409


class TestSendTicket:
    @patch.object(EmailGateway, "send_email")
    @patch.object(TwilioGateway, "send_sms")
    @patch.object(TwilioGateway, "has_whatsapp", return_value=False)
    def test_send_ticket_by_email(self, _has_whatsapp, send_sms, send_email, client, db, make_booking, make_attachment):
        seed_default_templates(db)
        send_email.return_value = GatewayResult(success=True, external_id="sg-1")
        send_sms.return_value = GatewayResult(success=True, external_id="SM-1")
        booking = make_booking(reference_number="REF-1")
        attachment = make_attachment(booking)

        response = client.post(f"/api/bookings/{booking.id}/send-ticket", json={
            "attachment_ids": [attachment.id],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "success"
        assert data["channels"] == ["email", "sms"]

        history = client.get(f"/api/bookings/{booking.id}/messages").json()
        assert {m["channel"] for m in history} == {"email", "sms"}

    def test_send_ticket_precondition(self, client, make_booking, make_attachment):
        booking = make_booking()
        attachment = make_attachment(booking)

        response = client.post(f"/api/bookings/{booking.id}/send-ticket", json={
            "attachment_ids": [attachment.id],
        })

        assert response.status_code == 422
        assert "reference number" in response.json()["detail"]

    @patch.object(TwilioGateway, "has_whatsapp", return_value=True)
    def test_detect_channel(self, _has_whatsapp, client, make_booking):
        booking = make_booking()
        data = client.get(f"/api/bookings/{booking.id}/detect-channel").json()
        assert data["primary"] == "whatsapp"
        assert data["whatsapp_capable"] is True


class TestHealth:
    def test_simple_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_detailed_health(self, client, scheduler):
        scheduler.status.return_value = {"reconciliation": {"running": False}}
        with patch("ticketdesk.routers.health.get_bokun_health", MagicMock(return_value={"status": "up"})):
            data = client.get("/health/detailed").json()
        assert data["status"] == "healthy"
        assert data["jobs"] == {"reconciliation": {"running": False}}
        assert data["checks"]["queues"]["failed_messages"] == 0
