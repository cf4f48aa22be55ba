"""
Reconciliation Engine

Periodically makes the local booking set agree with Bokun:

1. Fetch confirmed upcoming bookings (paged) and upsert the eligible ones
2. Cancellation sweep: local future bookings missing from the listing
   are looked up one by one; only an explicit CANCELLED status cancels
3. Enrichment: fill participants, channel, contact and audio flag for
   bookings that lack them

A failed fetch stops the run before the sweep. Per-booking failures
(timeouts, bad rows) are recorded and never abort the batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import BookingDataError
from ..models.booking import Booking
from ..repositories.booking_repository import BookingRepository
from ..utils.logging_config import get_logger
from ..utils.phone import format_e164
from .bokun_client import BokunClient
from .booking_extractors import (
    extract_booking_channel,
    extract_customer_contact,
    extract_has_audio_guide,
    extract_participants,
    extract_status,
)
from .booking_mutations import BookingMutator

logger = get_logger(__name__)

AUTO_SYNC_STALE_MINUTES = 5


@dataclass
class ReconciliationReport:
    fetched: int = 0
    synced: int = 0
    created: int = 0
    skipped: int = 0
    cancelled: int = 0
    cancellation_checks: int = 0
    enriched: int = 0
    participants_updated: int = 0
    data_quality_warnings: int = 0
    aborted: bool = False
    failures: List[Dict] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def fail(self, code: Optional[str], stage: str, error: str):
        self.failures.append({"confirmation_code": code, "stage": stage, "error": error})

    def as_dict(self) -> Dict:
        return {
            "fetched": self.fetched,
            "synced": self.synced,
            "created": self.created,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "cancellation_checks": self.cancellation_checks,
            "enriched": self.enriched,
            "participants_updated": self.participants_updated,
            "data_quality_warnings": self.data_quality_warnings,
            "aborted": self.aborted,
            "failures": self.failures,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ImportReport:
    pages: int = 0
    fetched: int = 0
    imported: int = 0
    updated: int = 0
    skipped_cancelled: int = 0
    ignored: int = 0
    failures: List[Dict] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {
            "pages": self.pages,
            "fetched": self.fetched,
            "imported": self.imported,
            "updated": self.updated,
            "skipped_cancelled": self.skipped_cancelled,
            "ignored": self.ignored,
            "failures": self.failures,
        }


class ReconciliationEngine:
    def __init__(self, db: Session, settings: Settings, client: BokunClient):
        self.db = db
        self.settings = settings
        self.client = client
        self.bookings = BookingRepository(db)
        self.mutator = BookingMutator(db, settings)

    # ==================
    # Full run
    # ==================

    def run(self, limit: Optional[int] = None, full: bool = False) -> ReconciliationReport:
        """
        One reconciliation pass.

        `limit` caps how many bookings are enriched (default from
        settings); `full` enriches everything that needs it.
        """
        report = ReconciliationReport()
        now = datetime.utcnow()

        seen_codes = self._sync_upcoming(report, now)
        if seen_codes is None:
            report.aborted = True
            report.finished_at = datetime.utcnow()
            logger.warning(f"Reconciliation aborted: {report.failures[-1]['error']}")
            return report

        self._cancellation_sweep(report, seen_codes, now)

        enrich_limit = None if full else (limit or self.settings.sync_enrichment_limit)
        self.enrich(enrich_limit, report)

        report.finished_at = datetime.utcnow()
        logger.log_with_context(
            logging.INFO,
            f"Reconciliation done: {report.synced} synced, {report.cancelled} cancelled, "
            f"{report.enriched} enriched, {len(report.failures)} failures",
            entity_type="reconciliation",
            **{k: v for k, v in report.as_dict().items() if isinstance(v, int)}
        )
        return report

    def _sync_upcoming(self, report: ReconciliationReport, now: datetime) -> Optional[set]:
        response = self.client.search_upcoming_bookings(now)
        if not response.success:
            report.fail(None, "fetch", response.error or "Upstream fetch failed")
            return None

        results = (response.data or {}).get("results") or []
        report.fetched = len(results)
        seen_codes = set()

        for result in results:
            if not isinstance(result, dict):
                continue
            code = BookingMutator.search_result_code(result)
            if not self.mutator.is_eligible(BookingMutator.search_result_product_id(result)):
                report.skipped += 1
                continue
            if code:
                seen_codes.add(code)
            try:
                booking, created = self.mutator.apply_search_result(result)
                self.db.commit()
            except BookingDataError as e:
                self.db.rollback()
                report.fail(code, "upsert", str(e))
                continue
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Unexpected error syncing booking {code}")
                report.fail(code, "upsert", f"{type(e).__name__}: {e}")
                continue
            if booking.is_cancelled:
                report.skipped += 1
                continue
            report.synced += 1
            if created:
                report.created += 1

        return seen_codes

    def _cancellation_sweep(self, report: ReconciliationReport, seen_codes: set, now: datetime):
        candidates = self.bookings.find_future_not_in(
            seen_codes, now, self.settings.eligible_product_id_list
        )
        for booking in candidates:
            code = booking.bokun_booking_id
            report.cancellation_checks += 1
            response = self.client.get_booking_details(code)
            if not response.success:
                # A timeout or error is not evidence of cancellation
                report.fail(code, "cancellation_check", response.error or "Detail lookup failed")
                continue
            if extract_status(response.data) == "CANCELLED":
                self.bookings.cancel(booking, datetime.utcnow())
                self.db.commit()
                report.cancelled += 1
                logger.booking_cancelled(code, source="reconciliation")

    # ==================
    # Enrichment
    # ==================

    def enrich(self, limit: Optional[int] = None, report: Optional[ReconciliationReport] = None) -> ReconciliationReport:
        report = report or ReconciliationReport()
        for booking in self.bookings.needing_enrichment(limit):
            code = booking.bokun_booking_id
            response = self.client.get_booking_details(code)
            if not response.success:
                report.fail(code, "enrichment", response.error or "Detail lookup failed")
                continue
            try:
                self.apply_details(booking, response.data or {}, report)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                report.fail(code, "enrichment", str(e))
                continue
            report.enriched += 1
        return report

    def apply_details(self, booking: Booking, details: Dict, report: ReconciliationReport):
        code = booking.bokun_booking_id
        extraction = extract_participants(details)
        contact = extract_customer_contact(details)

        fields = {
            "booking_channel": extract_booking_channel(details),
            "customer_email": contact.email,
            "customer_phone": format_e164(contact.phone) or None,
            "has_audio_guide": extract_has_audio_guide(
                details,
                self.settings.audio_guide_product_id,
                self.settings.audio_guide_rate_id_list,
                self.settings.audio_guide_rate_code_list,
                product_id=booking.bokun_product_id,
            ),
        }
        if extraction.participants:
            if extraction.participants != booking.participants:
                report.participants_updated += 1
            fields["participants"] = extraction.participants
        elif booking.participants is None:
            # Fetched, nothing extractable
            fields["participants"] = []

        self.bookings.enrich(booking, fields)

        if extraction.divergent_shapes:
            report.data_quality_warnings += 1
            logger.data_quality_warning(
                code,
                "participant sources disagree",
                chosen=extraction.shape,
                divergent=extraction.divergent_shapes,
            )
        if extraction.participants and len(extraction.participants) < (booking.pax or 0):
            report.data_quality_warnings += 1
            logger.data_quality_warning(
                code,
                f"{len(extraction.participants)} participants for {booking.pax} pax",
                participants=len(extraction.participants),
                pax=booking.pax,
            )

    def backfill_audio_guide(self, limit: int = 100) -> Dict:
        """Recompute the audio flag for audio-product bookings not flagged yet."""
        checked = 0
        flagged = 0
        failures = []
        for booking in self.bookings.missing_audio_flag(self.settings.audio_guide_product_id, limit):
            checked += 1
            response = self.client.get_booking_details(booking.bokun_booking_id)
            if not response.success:
                failures.append({"confirmation_code": booking.bokun_booking_id, "error": response.error})
                continue
            if extract_has_audio_guide(
                response.data,
                self.settings.audio_guide_product_id,
                self.settings.audio_guide_rate_id_list,
                self.settings.audio_guide_rate_code_list,
                product_id=booking.bokun_product_id,
            ):
                self.bookings.enrich(booking, {"has_audio_guide": True})
                self.db.commit()
                flagged += 1
        return {"checked": checked, "flagged": flagged, "failures": failures}

    # ==================
    # Historical import
    # ==================

    def import_historical(self, start: datetime, end: datetime, page_size: Optional[int] = None) -> ImportReport:
        report = ImportReport()
        for response in self.client.iter_historical_bookings(start, end, page_size):
            if not response.success:
                report.failures.append({"page": report.pages + 1, "error": response.error})
                break
            report.pages += 1
            for result in (response.data or {}).get("results") or []:
                if isinstance(result, dict):
                    self._import_booking(result, report)
            self.db.commit()

        logger.info(
            f"Historical import {start.date()}..{end.date()}: {report.imported} new, "
            f"{report.updated} updated, {report.skipped_cancelled} cancelled skipped"
        )
        return report

    def _import_booking(self, result: Dict, report: ImportReport):
        report.fetched += 1
        if str(result.get("status") or "").upper() == "CANCELLED":
            report.skipped_cancelled += 1
            return

        product_bookings = result.get("productBookings")
        rows = product_bookings if isinstance(product_bookings, list) and product_bookings else [result]
        for row in rows:
            if not isinstance(row, dict):
                continue
            merged = dict(row)
            merged.setdefault("confirmationCode", result.get("confirmationCode"))
            merged.setdefault("customer", result.get("customer"))
            if merged.get("startDateTime") is None and merged.get("startDate") is None:
                merged["startDate"] = row.get("date") or result.get("startDate")

            if not self.mutator.is_eligible(BookingMutator.search_result_product_id(merged)):
                report.ignored += 1
                continue
            try:
                _, created = self.mutator.apply_search_result(merged, source="import")
            except BookingDataError as e:
                report.failures.append({"confirmation_code": merged.get("confirmationCode"), "error": str(e)})
                continue
            if created:
                report.imported += 1
            else:
                report.updated += 1

    # ==================
    # Status
    # ==================

    def auto_sync_status(self, last_run_at: Optional[datetime]) -> Dict:
        """Sync health summary and whether a background run is due."""
        total = self.bookings.count()
        pending_participants = self.bookings.count_missing_participants()
        pending_channels = self.bookings.count_missing_channel()
        incomplete = sum(
            1 for booking in self.bookings.with_participants()
            if 0 < len(booking.participants or []) < (booking.pax or 0)
        )

        minutes_ago = None
        if last_run_at:
            minutes_ago = int((datetime.utcnow() - last_run_at).total_seconds() // 60)

        should_sync = (
            pending_participants > 0
            or pending_channels > 0
            or minutes_ago is None
            or minutes_ago > AUTO_SYNC_STALE_MINUTES
        )
        return {
            "total_bookings": total,
            "pending_participants": pending_participants,
            "pending_channels": pending_channels,
            "incomplete_participants": incomplete,
            "all_synced": pending_participants == 0 and pending_channels == 0,
            "sync_triggered": should_sync,
            "last_sync_minutes_ago": minutes_ago,
        }
