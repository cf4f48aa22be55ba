"""
Tests for Bokun HMAC signatures

Tests cover:
- Canonical header string (filtering, lower-casing, ordering, first value wins)
- Webhook signature verification never raising
- Outbound request signing
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone

from ticketdesk.services.signature import (
    bokun_request_headers,
    canonical_header_string,
    sign_webhook_headers,
    verify_webhook_signature,
)

SECRET = "shh"


def _signed_headers(**extra):
    headers = {
        "X-Bokun-Booking-Id": "123",
        "X-Bokun-Topic": "bookings/create",
        "X-Bokun-Apikey": "key-1",
        "Content-Type": "application/json",
    }
    headers.update(extra)
    headers["X-Bokun-HMAC"] = sign_webhook_headers(headers, SECRET)
    return headers


class TestCanonicalHeaderString:
    def test_only_bokun_headers_sorted_and_encoded(self):
        canonical, signature = canonical_header_string({
            "X-Bokun-Topic": "bookings/create",
            "x-bokun-apikey": "a b",
            "Content-Type": "application/json",
            "X-Bokun-HMAC": "abc",
        })
        assert canonical == "x-bokun-apikey=a+b&x-bokun-topic=bookings%2Fcreate"
        assert signature == "abc"

    def test_first_value_of_repeated_header_wins(self):
        canonical, _ = canonical_header_string([
            ("x-bokun-topic", "first"),
            ("X-Bokun-Topic", "second"),
        ])
        assert canonical == "x-bokun-topic=first"

    def test_no_signature_header(self):
        _, signature = canonical_header_string({"x-bokun-topic": "t"})
        assert signature is None


class TestVerifyWebhookSignature:
    def test_valid_signature(self):
        assert verify_webhook_signature(_signed_headers(), SECRET) is True

    def test_signature_is_case_insensitive_hex(self):
        headers = _signed_headers()
        headers["X-Bokun-HMAC"] = headers["X-Bokun-HMAC"].upper()
        assert verify_webhook_signature(headers, SECRET) is True

    def test_tampered_header_rejected(self):
        headers = _signed_headers()
        headers["X-Bokun-Booking-Id"] = "999"
        assert verify_webhook_signature(headers, SECRET) is False

    def test_non_bokun_headers_do_not_affect_signature(self):
        headers = _signed_headers()
        headers["User-Agent"] = "something else"
        assert verify_webhook_signature(headers, SECRET) is True

    def test_wrong_secret_rejected(self):
        assert verify_webhook_signature(_signed_headers(), "other") is False

    def test_missing_signature_rejected(self):
        headers = _signed_headers()
        del headers["X-Bokun-HMAC"]
        assert verify_webhook_signature(headers, SECRET) is False

    def test_empty_secret_or_headers_rejected(self):
        assert verify_webhook_signature(_signed_headers(), "") is False
        assert verify_webhook_signature({}, SECRET) is False

    def test_garbage_input_does_not_raise(self):
        assert verify_webhook_signature([("x-bokun-hmac", None)], SECRET) is False


class TestBokunRequestHeaders:
    def test_signature_matches_hmac_sha1(self):
        now = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)
        headers = bokun_request_headers("post", "/booking.json/booking-search?lang=EN", "ak", "sk", now)

        message = "2026-03-01 09:30:00akPOST/booking.json/booking-search?lang=EN"
        expected = base64.b64encode(hmac.new(b"sk", message.encode(), hashlib.sha1).digest()).decode()

        assert headers["X-Bokun-Date"] == "2026-03-01 09:30:00"
        assert headers["X-Bokun-AccessKey"] == "ak"
        assert headers["X-Bokun-Signature"] == expected
