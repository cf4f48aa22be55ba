"""
Tests for the Bokun API client: signing, pacing, retries and paging
"""

import json
from datetime import datetime

import httpx

from ticketdesk.services.bokun_client import BokunClient


def _client(settings, handler, sleeps=None):
    sleeps = sleeps if sleeps is not None else []
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return BokunClient(settings, http_client=http, sleep=sleeps.append)


class TestMakeRequest:
    def test_signed_headers_sent(self, settings):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"id": 1})

        response = _client(settings, handler).get_booking_details("UFF-1")

        assert response.success is True
        assert response.data == {"id": 1}
        assert seen["x-bokun-accesskey"] == "access-key"
        assert "x-bokun-signature" in seen
        assert "x-bokun-date" in seen

    def test_pacing_delay_before_each_call(self, settings):
        settings.bokun_request_delay_ms = 250
        sleeps = []
        client = _client(settings, lambda request: httpx.Response(200, json={}), sleeps)

        client.get_booking_details("UFF-1")
        client.get_booking_details("UFF-2")

        assert sleeps == [0.25, 0.25]

    def test_retries_server_errors_then_succeeds(self, settings):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503, json={})
            return httpx.Response(200, json={"ok": True})

        sleeps = []
        response = _client(settings, handler, sleeps).get_booking_details("UFF-1")

        assert response.success is True
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_rate_limited_honours_retry_after(self, settings):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "5"})
            return httpx.Response(200, json={})

        sleeps = []
        _client(settings, handler, sleeps).get_booking_details("UFF-1")

        assert sleeps == [5.0]

    def test_client_error_not_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404, json={"message": "No such booking"})

        response = _client(settings, handler).get_booking_details("UFF-404")

        assert response.success is False
        assert response.error_code == "not_found"
        assert response.error == "No such booking"
        assert response.should_retry is False
        assert len(calls) == 1

    def test_timeouts_exhaust_retries(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        response = _client(settings, handler).get_booking_details("UFF-1")

        assert response.success is False
        assert response.timed_out is True
        assert response.error_code == "timeout"


class TestSearch:
    def test_pages_until_short_page(self, settings):
        settings.bokun_page_size = 2
        pages = []

        def handler(request):
            body = json.loads(request.content)
            pages.append(body["page"])
            if body["page"] == 1:
                return httpx.Response(200, json={"results": [{"confirmationCode": "A"}, {"confirmationCode": "B"}]})
            return httpx.Response(200, json={"results": [{"confirmationCode": "C"}]})

        response = _client(settings, handler).search_upcoming_bookings(datetime(2026, 10, 1))

        assert response.success is True
        assert [r["confirmationCode"] for r in response.data["results"]] == ["A", "B", "C"]
        assert pages == [1, 2]

    def test_failed_page_fails_the_listing(self, settings):
        settings.bokun_page_size = 1

        def handler(request):
            body = json.loads(request.content)
            if body["page"] == 1:
                return httpx.Response(200, json={"results": [{"confirmationCode": "A"}]})
            return httpx.Response(401, json={})

        response = _client(settings, handler).search_upcoming_bookings()

        assert response.success is False
        assert response.status_code == 401

    def test_historical_pages_stop_at_total(self, settings):
        def handler(request):
            body = json.loads(request.content)
            assert body["startDateRange"] == {
                "from": "2026-01-01T00:00:00.000Z",
                "to": "2026-01-31T23:59:59.999Z",
            }
            return httpx.Response(200, json={"results": [{"confirmationCode": str(body["page"])}] * 2, "totalCount": 4})

        responses = list(_client(settings, handler).iter_historical_bookings(
            datetime(2026, 1, 1), datetime(2026, 1, 31), page_size=2
        ))

        assert len(responses) == 2
        assert all(r.success for r in responses)
