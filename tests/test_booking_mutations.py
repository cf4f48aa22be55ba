"""
Tests for upstream booking mutations and the booking repository merge rule
"""

from datetime import datetime, timedelta

import pytest

from ticketdesk.exceptions import BookingDataError, WebhookValidationError
from ticketdesk.models.booking import Booking
from ticketdesk.repositories.booking_repository import BookingRepository
from ticketdesk.services.booking_mutations import (
    BookingMutator,
    consolidate_pax_details,
    is_cancellation_event,
    parse_upstream_datetime,
    upstream_count,
    upstream_text,
    webhook_confirmation_code,
)


def _booking_payload(code="UFF-1001", product_id=961801, **overrides):
    payload = {
        "eventType": "bookings/create",
        "confirmationCode": code,
        "customer": {
            "firstName": "Maria",
            "lastName": "Rossi",
            "email": "maria@example.com",
            "phoneNumber": "0039 333 1234567",
        },
        "productBookings": [{
            "product": {"id": product_id, "title": "Uffizi Gallery Tour"},
            "date": "2026-11-05T09:00:00Z",
            "passengers": [{"firstName": "Maria"}, {"firstName": "Luca"}],
        }],
    }
    payload.update(overrides)
    return payload


class TestParseUpstreamDatetime:
    def test_epoch_milliseconds(self):
        assert parse_upstream_datetime(1767225600000) == datetime(2026, 1, 1, 0, 0)

    def test_digit_string(self):
        assert parse_upstream_datetime("1767225600000") == datetime(2026, 1, 1, 0, 0)

    def test_iso_with_offset_converted_to_utc(self):
        assert parse_upstream_datetime("2026-01-01T10:00:00+01:00") == datetime(2026, 1, 1, 9, 0)

    def test_plain_date(self):
        assert parse_upstream_datetime("2026-01-01") == datetime(2026, 1, 1)

    def test_invalid_values(self):
        assert parse_upstream_datetime(None) is None
        assert parse_upstream_datetime("") is None
        assert parse_upstream_datetime("tomorrow") is None
        assert parse_upstream_datetime(True) is None

    def test_out_of_range_epoch(self):
        assert parse_upstream_datetime(10 ** 20) is None


class TestUpstreamCoercion:
    def test_text(self):
        assert upstream_text("  Maria ") == "Maria"
        assert upstream_text(12345) == "12345"
        assert upstream_text(None) == ""
        assert upstream_text({"first": "Maria"}) == ""
        assert upstream_text(True) == ""

    def test_count(self):
        assert upstream_count(3, "UFF-1") == 3
        assert upstream_count("4", "UFF-1") == 4
        assert upstream_count(None, "UFF-1") == 1
        assert upstream_count(2.0, "UFF-1") == 2

    @pytest.mark.parametrize("value", ["two", 0, -1, 2.5, True, [2]])
    def test_invalid_count(self, value):
        with pytest.raises(BookingDataError):
            upstream_count(value, "UFF-1")

    def test_webhook_variant_raises_validation_error(self):
        with pytest.raises(WebhookValidationError):
            upstream_count("two", "UFF-1", WebhookValidationError)


class TestHelpers:
    def test_cancellation_event_types(self):
        assert is_cancellation_event("cancelled")
        assert is_cancellation_event("BOOKINGS/CANCELLED")
        assert not is_cancellation_event("bookings/create")
        assert not is_cancellation_event(None)

    def test_confirmation_code_from_product_booking(self):
        payload = {"productBookings": [{"confirmationCode": "UFF-9"}]}
        assert webhook_confirmation_code(payload) == "UFF-9"
        assert webhook_confirmation_code({}) is None

    def test_consolidate_pax_details(self):
        fields = {"priceCategoryBookings": [
            {"bookedTitle": "Adult", "quantity": 1},
            {"bookedTitle": "Adult", "quantity": 2},
            {"pricingCategory": {"title": "Child"}, "quantity": "1"},
            {"bookedTitle": "Infant", "quantity": 0},
        ]}
        assert consolidate_pax_details(fields) == [
            {"type": "Adult", "quantity": 3},
            {"type": "Child", "quantity": 1},
        ]
        assert consolidate_pax_details({}) is None


class TestApplyWebhookEvent:
    def test_creates_booking(self, db, settings):
        summary = BookingMutator(db, settings).apply_webhook_event(_booking_payload())
        db.commit()

        assert summary.count == 1
        booking = db.query(Booking).filter_by(bokun_booking_id="UFF-1001").one()
        assert booking.customer_name == "Maria Rossi"
        assert booking.customer_phone == "+393331234567"
        assert booking.pax == 2
        assert booking.tour_date == datetime(2026, 11, 5, 9, 0)
        assert booking.status == "pending_ticket"

    def test_replay_is_idempotent(self, db, settings):
        mutator = BookingMutator(db, settings)
        mutator.apply_webhook_event(_booking_payload())
        mutator.apply_webhook_event(_booking_payload())
        db.commit()

        assert db.query(Booking).filter_by(bokun_booking_id="UFF-1001").count() == 1

    def test_ineligible_product_is_ignored(self, db, settings):
        summary = BookingMutator(db, settings).apply_webhook_event(_booking_payload(product_id=1))

        assert summary.count == 0
        assert summary.ignored == 1
        assert db.query(Booking).count() == 0

    def test_pax_falls_back_to_total_participants(self, db, settings):
        payload = _booking_payload()
        payload["productBookings"][0]["passengers"] = []
        payload["productBookings"][0]["totalParticipants"] = 4

        BookingMutator(db, settings).apply_webhook_event(payload)

        assert db.query(Booking).one().pax == 4

    def test_non_string_names_coerced(self, db, settings):
        payload = _booking_payload()
        payload["customer"]["firstName"] = 12345
        payload["customer"]["lastName"] = {"unexpected": "object"}

        BookingMutator(db, settings).apply_webhook_event(payload)

        assert db.query(Booking).one().customer_name == "12345"

    def test_invalid_total_participants_rejected(self, db, settings):
        payload = _booking_payload()
        payload["productBookings"][0]["passengers"] = []
        payload["productBookings"][0]["totalParticipants"] = "two"

        with pytest.raises(WebhookValidationError):
            BookingMutator(db, settings).apply_webhook_event(payload)

    def test_missing_product_bookings_rejected(self, db, settings):
        with pytest.raises(WebhookValidationError):
            BookingMutator(db, settings).apply_webhook_event({"eventType": "bookings/create"})

    def test_non_object_payload_rejected(self, db, settings):
        with pytest.raises(WebhookValidationError):
            BookingMutator(db, settings).apply_webhook_event(["not", "a", "dict"])

    def test_cancellation_soft_deletes(self, db, settings, make_booking):
        booking = make_booking(bokun_booking_id="UFF-2002")

        summary = BookingMutator(db, settings).apply_webhook_event(
            {"eventType": "cancelled", "confirmationCode": "UFF-2002"}
        )
        db.commit()
        db.refresh(booking)

        assert summary.cancelled == 1
        assert booking.is_cancelled
        assert booking.cancelled_at is not None

    def test_cancellation_of_unknown_booking_is_noop(self, db, settings):
        summary = BookingMutator(db, settings).apply_webhook_event(
            {"eventType": "bookings/cancelled", "confirmationCode": "NOPE"}
        )
        assert summary.cancelled == 0
        assert summary.count == 0

    def test_cancelled_booking_not_resurrected(self, db, settings, make_booking):
        booking = make_booking(bokun_booking_id="UFF-1001")
        booking.cancel(datetime.utcnow())
        db.commit()

        summary = BookingMutator(db, settings).apply_webhook_event(_booking_payload())

        assert summary.count == 0
        assert summary.ignored == 1
        db.refresh(booking)
        assert booking.is_cancelled


class TestApplySearchResult:
    def test_requires_start_date(self, db, settings):
        with pytest.raises(BookingDataError):
            BookingMutator(db, settings).apply_search_result(
                {"confirmationCode": "UFF-1", "product": {"id": 961801}}
            )

    def test_upsert_from_search_row(self, db, settings):
        booking, created = BookingMutator(db, settings).apply_search_result({
            "confirmationCode": "UFF-3003",
            "product": {"id": 961801, "title": "Uffizi"},
            "startDateTime": 1767261600000,
            "totalParticipants": 3,
            "customer": {"firstName": "Anna", "lastName": "Verdi"},
        })

        assert created is True
        assert booking.pax == 3
        assert booking.customer_name == "Anna Verdi"

    def test_invalid_participant_count(self, db, settings):
        with pytest.raises(BookingDataError):
            BookingMutator(db, settings).apply_search_result({
                "confirmationCode": "UFF-3004",
                "product": {"id": 961801},
                "startDateTime": 1767261600000,
                "totalParticipants": "two",
            })


class TestRepositoryMerge:
    def test_participants_never_replaced_by_empty(self, db, make_booking):
        booking = make_booking(participants=[{"name": "Maria Rossi", "category": "Adult"}])
        repo = BookingRepository(db)

        repo.upsert(booking.bokun_booking_id, {"participants": [], "pax": 3})
        db.commit()
        db.refresh(booking)

        assert booking.participants == [{"name": "Maria Rossi", "category": "Adult"}]
        assert booking.pax == 3

    def test_operator_fields_untouched(self, db, make_booking):
        booking = make_booking(status="ticket_purchased", reference_number="REF-1")

        BookingRepository(db).upsert(booking.bokun_booking_id, {
            "status": "pending_ticket",
            "reference_number": None,
            "pax": 5,
        })
        db.commit()
        db.refresh(booking)

        assert booking.status == "ticket_purchased"
        assert booking.reference_number == "REF-1"
        assert booking.pax == 5

    def test_stats(self, db, make_booking):
        now = datetime.utcnow()
        make_booking(tour_date=now + timedelta(days=1))
        make_booking(tour_date=now - timedelta(days=3), status="ticket_purchased")
        cancelled = make_booking()
        cancelled.cancel(now)
        db.commit()

        stats = BookingRepository(db).stats(now)

        assert stats["total"] == 2
        assert stats["pending_ticket"] == 1
        assert stats["ticket_purchased"] == 1
        assert stats["upcoming"] == 1
        assert stats["cancelled"] == 1

    def test_find_by_phone_matches_last_digits(self, db, make_booking):
        booking = make_booking(customer_phone="+393331234567")

        assert BookingRepository(db).find_by_phone("whatsapp:+39 333 123 4567").id == booking.id
        assert BookingRepository(db).find_by_phone("0039 3331234567").id == booking.id
        assert BookingRepository(db).find_by_phone("+441234") is None
