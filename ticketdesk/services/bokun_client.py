"""
Bokun API Client

Wrapper for the Bokun REST API that handles:
- HMAC-SHA1 request signing (X-Bokun-* headers)
- Pacing delay before every call
- Bounded timeouts
- Structured error mapping
- Exponential backoff on 429 / 5xx / network errors

Bokun API documentation: https://bokun.dev/
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from ..config import Settings
from .signature import bokun_request_headers

logger = logging.getLogger(__name__)


@dataclass
class BokunResponse:
    """Wrapper for Bokun API responses with structured error info"""
    success: bool
    status_code: int
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    should_retry: bool = False
    timed_out: bool = False
    request_id: Optional[str] = None


@dataclass
class BokunError:
    """Structured error from the Bokun API"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


ERROR_MAP = {
    400: BokunError("bad_request", "Malformed request", 400, False),
    401: BokunError("unauthorized", "Invalid access key or signature", 401, False),
    403: BokunError("forbidden", "Access denied to this resource", 403, False),
    404: BokunError("not_found", "Resource not found", 404, False),
    422: BokunError("validation_error", "Invalid request data", 422, False),
    429: BokunError("rate_limited", "Too many requests", 429, True),
    500: BokunError("server_error", "Bokun server error", 500, True),
    502: BokunError("bad_gateway", "Bokun gateway error", 502, True),
    503: BokunError("service_unavailable", "Bokun service unavailable", 503, True),
    504: BokunError("gateway_timeout", "Bokun gateway timeout", 504, True),
}


def _iso_day_start(day: datetime) -> str:
    return day.strftime("%Y-%m-%dT00:00:00.000Z")


def _iso_day_end(day: datetime) -> str:
    return day.strftime("%Y-%m-%dT23:59:59.999Z")


class BokunClient:
    """
    Client for the Bokun booking API.

    Every call sleeps `bokun_request_delay_ms` first so batch loops
    stay under the upstream rate limit.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        request_id: Optional[str] = None,
    ):
        self.settings = settings
        self.base_url = settings.bokun_base_url.rstrip("/")
        self.access_key = settings.bokun_access_key
        self.secret_key = settings.bokun_secret_key
        self.request_delay = max(settings.bokun_request_delay_ms, 0) / 1000.0
        self.page_size = settings.bokun_page_size
        self.request_id = request_id or "no-request-id"
        self._sleep = sleep
        self._http = http_client or httpx.Client(timeout=settings.bokun_timeout_seconds)

        # Retry configuration
        self.max_retries = 3
        self.base_delay = 1.0
        self.max_delay = 30.0

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _map_error(self, status_code: int, response_data: Optional[Any]) -> BokunError:
        """Map HTTP status code to structured error"""
        if status_code in ERROR_MAP:
            error = ERROR_MAP[status_code]
            if isinstance(response_data, dict) and response_data.get("message"):
                return BokunError(error.code, str(response_data["message"]), status_code, error.retryable)
            return error

        if status_code >= 500:
            return BokunError("server_error", f"Server error: {status_code}", status_code, True)

        return BokunError("unknown", f"Unknown error: {status_code}", status_code, False)

    def _make_request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict] = None,
    ) -> BokunResponse:
        """
        Make a signed request with pacing and retry logic.
        """
        url = f"{self.base_url}{path}"
        last_error = None
        last_status = 0
        timed_out = False

        for attempt in range(self.max_retries):
            # Pacing
            if self.request_delay:
                self._sleep(self.request_delay)

            headers = bokun_request_headers(method, path, self.access_key, self.secret_key)
            try:
                response = self._http.request(method.upper(), url, headers=headers, json=payload)
            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
                timed_out = True
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                logger.warning(f"[{self.request_id}] Bokun {method} {path} timed out, retrying in {delay}s")
                self._sleep(delay)
                continue
            except httpx.HTTPError as e:
                last_error = str(e)
                timed_out = False
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                logger.error(f"[{self.request_id}] Bokun {method} {path} failed: {e}, retrying in {delay}s")
                self._sleep(delay)
                continue

            status_code = response.status_code
            last_status = status_code
            timed_out = False

            try:
                data = response.json()
            except ValueError:
                data = None

            if 200 <= status_code < 300:
                return BokunResponse(
                    success=True,
                    status_code=status_code,
                    data=data,
                    request_id=self.request_id
                )

            error = self._map_error(status_code, data)
            if error.retryable and attempt < self.max_retries - 1:
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                if status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = min(float(retry_after), self.max_delay)
                logger.warning(
                    f"[{self.request_id}] Bokun {method} {path} -> {status_code}, retrying in {delay}s"
                )
                last_error = error.message
                self._sleep(delay)
                continue

            logger.warning(f"[{self.request_id}] Bokun {method} {path} -> {status_code}: {error.message}")
            return BokunResponse(
                success=False,
                status_code=status_code,
                data=data,
                error=error.message,
                error_code=error.code,
                should_retry=error.retryable,
                request_id=self.request_id
            )

        return BokunResponse(
            success=False,
            status_code=last_status,
            error=f"All retries failed: {last_error}",
            error_code="timeout" if timed_out else "network_error",
            should_retry=True,
            timed_out=timed_out,
            request_id=self.request_id
        )

    # ==================
    # Booking Operations
    # ==================

    def search_upcoming_page(self, page: int, now: Optional[datetime] = None) -> BokunResponse:
        now = now or datetime.utcnow()
        payload = {
            "bookingStatuses": ["CONFIRMED"],
            "page": page,
            "pageSize": self.page_size,
            "startDateRange": {
                "from": (now - timedelta(days=self.settings.sync_lookback_days)).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "to": (now + timedelta(days=self.settings.sync_horizon_days)).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            },
        }
        return self._make_request("POST", "/booking.json/product-booking-search", payload)

    def search_upcoming_bookings(self, now: Optional[datetime] = None) -> BokunResponse:
        """
        All confirmed product bookings in the sync window.

        Pages until a short page. Fails as a whole if any page fails, so a
        partial listing is never mistaken for the full set.
        """
        results: List[Dict] = []
        page = 1
        while True:
            response = self.search_upcoming_page(page, now)
            if not response.success:
                return response
            items = (response.data or {}).get("results") or []
            results.extend(items)
            if len(items) < self.page_size:
                break
            page += 1

        return BokunResponse(
            success=True,
            status_code=200,
            data={"results": results, "totalHits": len(results)},
            request_id=self.request_id
        )

    def get_booking_details(self, confirmation_code: str) -> BokunResponse:
        return self._make_request("GET", f"/booking.json/booking/{confirmation_code}")

    def search_historical_bookings(
        self,
        start: datetime,
        end: datetime,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> BokunResponse:
        payload = {
            "bookingRole": "SELLER",
            "bookingStatuses": ["CONFIRMED", "PENDING", "CANCELLED"],
            "pageSize": page_size or self.page_size,
            "page": page,
            "startDateRange": {
                "from": _iso_day_start(start),
                "to": _iso_day_end(end),
            },
        }
        return self._make_request("POST", "/booking.json/booking-search", payload)

    def iter_historical_bookings(
        self,
        start: datetime,
        end: datetime,
        page_size: Optional[int] = None,
    ) -> Iterator[BokunResponse]:
        """Yield each page response until the total is covered or a page fails."""
        size = page_size or self.page_size
        page = 1
        fetched = 0
        while True:
            response = self.search_historical_bookings(start, end, page, size)
            yield response
            if not response.success:
                return
            items = (response.data or {}).get("results") or []
            total = (response.data or {}).get("totalCount") or (response.data or {}).get("totalHits") or 0
            fetched += len(items)
            if not items or len(items) < size or (total and fetched >= total):
                return
            page += 1

    def test_connection(self) -> BokunResponse:
        return self._make_request("POST", "/activity.json/search", {"page": 1, "pageSize": 5})


def get_bokun_client(settings: Settings, request_id: Optional[str] = None) -> BokunClient:
    return BokunClient(settings, request_id=request_id)
