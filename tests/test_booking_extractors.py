"""
Tests for booking detail extraction and phone normalisation
"""

from ticketdesk.services.booking_extractors import (
    extract_booking_channel,
    extract_customer_contact,
    extract_has_audio_guide,
    extract_participants,
    extract_status,
)
from ticketdesk.utils.phone import format_e164, looks_like_mobile, strip_channel_prefix


def _pcb(first, last, title="Adult"):
    return {
        "passengerInfo": {"firstName": first, "lastName": last},
        "pricingCategory": {"title": title},
    }


class TestExtractParticipants:
    """Participant shapes and their priority"""

    def test_passenger_info_shape(self):
        details = {
            "activityBookings": [{
                "pricingCategoryBookings": [_pcb("Maria", "Rossi"), _pcb("Luca", "Bianchi", "Child")],
            }],
        }

        result = extract_participants(details)

        assert result.shape == "passenger_info"
        assert result.participants == [
            {"name": "Maria Rossi", "category": "Adult"},
            {"name": "Luca Bianchi", "category": "Child"},
        ]
        assert result.divergent_shapes == []

    def test_passenger_info_wins_over_guests(self):
        details = {
            "activityBookings": [{"pricingCategoryBookings": [_pcb("Maria", "Rossi")]}],
            "guests": [{"firstName": "Someone", "lastName": "Else"}],
        }

        result = extract_participants(details)

        assert result.shape == "passenger_info"
        assert result.participants[0]["name"] == "Maria Rossi"
        assert result.divergent_shapes == ["guests"]

    def test_agreeing_shapes_not_reported_as_divergent(self):
        details = {
            "activityBookings": [{"pricingCategoryBookings": [_pcb("Maria", "Rossi")]}],
            "passengers": [{"firstName": "maria", "lastName": "rossi"}],
        }

        assert extract_participants(details).divergent_shapes == []

    def test_product_passengers_and_fields(self):
        details = {
            "productBookings": [{
                "passengers": [{"firstName": "Anna", "lastName": "Verdi", "category": "Adult"}],
                "fields": {"passengers": [{"name": "Paolo Neri"}]},
            }],
        }

        result = extract_participants(details)

        assert result.shape == "product_passengers"
        assert [p["name"] for p in result.participants] == ["Anna Verdi", "Paolo Neri"]
        assert result.participants[1]["category"] == "Guest"

    def test_answers_first_and_last_name(self):
        details = {
            "activityBookings": [{
                "pricingCategoryBookings": [{
                    "pricingCategory": {"title": "Adult"},
                    "answers": [
                        {"question": "First name", "answer": "Giulia"},
                        {"question": "Last name", "answer": "Conti"},
                    ],
                }],
            }],
        }

        result = extract_participants(details)

        assert result.shape == "answers"
        assert result.participants == [{"name": "Giulia Conti", "category": "Adult"}]

    def test_blank_names_are_skipped(self):
        details = {"guests": [{"firstName": "  ", "lastName": ""}, {"name": "Real Person"}]}

        result = extract_participants(details)

        assert result.participants == [{"name": "Real Person", "category": "Guest"}]

    def test_nothing_found(self):
        result = extract_participants({"activityBookings": "not-a-list"})
        assert result.participants == []
        assert result.shape is None

    def test_none_details(self):
        assert extract_participants(None).participants == []


class TestOtherFields:
    def test_booking_channel(self):
        assert extract_booking_channel({"bookingChannel": {"title": "Viator"}}) == "Viator"
        assert extract_booking_channel({"bookingChannel": {"title": " "}}) == "direct"
        assert extract_booking_channel({}) == "direct"

    def test_customer_contact(self):
        contact = extract_customer_contact({
            "customer": {"email": " a@b.com ", "phoneNumber": "+39 333 1234567"},
        })
        assert contact.email == "a@b.com"
        assert contact.phone == "+39 333 1234567"

    def test_customer_contact_missing(self):
        contact = extract_customer_contact({"customer": {"email": ""}})
        assert contact.email is None
        assert contact.phone is None

    def test_status_is_uppercased(self):
        assert extract_status({"status": "cancelled"}) == "CANCELLED"
        assert extract_status({}) is None


class TestAudioGuide:
    DETAILS = {
        "activityBookings": [{
            "activity": {"id": 901938},
            "rate": {"id": 1861234, "title": "Entry + Audio"},
        }],
    }

    def test_matching_rate_id(self):
        assert extract_has_audio_guide(self.DETAILS, "901938", ["1861234"], []) is True

    def test_matching_rate_code(self):
        assert extract_has_audio_guide(self.DETAILS, "901938", [], ["entry + audio"]) is True

    def test_other_product_never_has_audio(self):
        assert extract_has_audio_guide(self.DETAILS, "111", ["1861234"], []) is False

    def test_explicit_product_id_overrides_details(self):
        assert extract_has_audio_guide(
            self.DETAILS, "901938", ["1861234"], [], product_id="961801"
        ) is False

    def test_no_matching_rate(self):
        assert extract_has_audio_guide(self.DETAILS, "901938", ["1"], ["OTHER"]) is False


class TestPhone:
    def test_format_e164(self):
        assert format_e164("+39 333 123 4567") == "+393331234567"
        assert format_e164("0039 333 1234567") == "+393331234567"
        assert format_e164("whatsapp:+393331234567") == "+393331234567"
        assert format_e164("393331234567") == "+393331234567"

    def test_format_e164_empty(self):
        assert format_e164(None) == ""
        assert format_e164("") == ""
        assert format_e164("abc") == ""

    def test_strip_channel_prefix(self):
        assert strip_channel_prefix("whatsapp:+1555") == "+1555"
        assert strip_channel_prefix("+1555") == "+1555"

    def test_looks_like_mobile(self):
        assert looks_like_mobile("+393331234567") is True
        assert looks_like_mobile("12345") is False
