"""
Job Scheduler

Background jobs run on APScheduler's AsyncIOScheduler in
SCHEDULER_TIMEZONE. Each job is registered with max_instances=1 and
coalesce=True, and every run (scheduled or manual, e.g. POST
/api/bookings/sync) goes through one in-flight guard per job name: a
run that comes due while the previous one is still going is skipped,
a manual trigger gets JobAlreadyRunningError.

Jobs:
- reconciliation           every SYNC_INTERVAL_MINUTES
- webhook_retry            every WORKER_POLL_INTERVAL seconds
- webhook_recovery         every WORKER_POLL_INTERVAL seconds
- message_retry            every MESSAGE_RETRY_INTERVAL_MINUTES
- ticket_reminder          at TICKET_REMINDER_TIMES
- download_token_cleanup   daily at MAINTENANCE_TIME
- booking_retention        daily at MAINTENANCE_TIME

Job bodies are blocking; the scheduler runs them in the event loop's
default thread pool.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings, get_settings
from ..database import SessionLocal
from ..exceptions import JobAlreadyRunningError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Job:
    name: str
    func: Callable[[], Any]
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    skipped: int = 0


def parse_time_of_day(value: str) -> dt_time:
    hour, minute = (value or "03:00").split(":")[:2]
    return dt_time(int(hour), int(minute))


def parse_times_of_day(value: str) -> List[dt_time]:
    """"07:00,11:00,14:00" -> [time(7), time(11), time(14)]"""
    return [parse_time_of_day(part.strip()) for part in (value or "").split(",") if part.strip()]


def daily_trigger(at: dt_time, tz: str) -> CronTrigger:
    return CronTrigger(hour=at.hour, minute=at.minute, timezone=tz)


def daily_times_trigger(times: List[dt_time], tz: str) -> BaseTrigger:
    """One trigger firing at each of `times`, so the job keeps one name and one guard."""
    if len(times) == 1:
        return daily_trigger(times[0], tz)
    return OrTrigger([daily_trigger(at, tz) for at in times])


class JobScheduler:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.timezone = settings.scheduler_timezone
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        self.jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._running: set = set()

    # ==================
    # Registration
    # ==================

    def register(
        self,
        name: str,
        func: Callable[[], Any],
        trigger: BaseTrigger,
        run_at_start: bool = False,
    ) -> Job:
        job = Job(name=name, func=func)
        self.jobs[name] = job
        # replace_existing only applies once started; pending jobs are a plain list
        if self.scheduler.get_job(name):
            self.scheduler.remove_job(name)
        extra = {"next_run_time": datetime.now(timezone.utc)} if run_at_start else {}
        self.scheduler.add_job(
            self.run_exclusive,
            trigger,
            args=[name],
            id=name,
            name=name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
            **extra
        )
        return job

    def start(self):
        """Start firing jobs. Needs a running event loop."""
        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return
        self.scheduler.start()
        logger.info(f"📅 Scheduler started with jobs: {', '.join(self.jobs)} ({self.timezone})")

    def shutdown(self):
        """Stop firing jobs. Runs already in flight finish in their threads."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("📅 Scheduler stopped")

    # ==================
    # Mutual exclusion
    # ==================

    def is_running(self, name: str) -> bool:
        with self._lock:
            return name in self._running

    def _acquire(self, name: str) -> bool:
        with self._lock:
            if name in self._running:
                return False
            self._running.add(name)
            return True

    def _release(self, name: str):
        with self._lock:
            self._running.discard(name)

    def run_exclusive(self, name: str, func: Optional[Callable[[], Any]] = None) -> Optional[Any]:
        """Run now unless a run of the same job is in flight; None when skipped."""
        if not self._acquire(name):
            job = self.jobs.get(name)
            if job:
                job.skipped += 1
            logger.info(f"Job '{name}' still running, skipping this run")
            return None
        return self._execute(name, func)

    def run_or_raise(self, name: str, func: Optional[Callable[[], Any]] = None) -> Any:
        """Manual trigger: raises JobAlreadyRunningError instead of skipping."""
        if not self._acquire(name):
            raise JobAlreadyRunningError(name)
        return self._execute(name, func)

    def _execute(self, name: str, func: Optional[Callable[[], Any]]) -> Any:
        job = self.jobs.get(name)
        func = func or (job.func if job else None)
        if func is None:
            self._release(name)
            raise KeyError(f"Unknown job '{name}'")

        started = datetime.utcnow()
        if job:
            job.last_started_at = started
        try:
            result = func()
            if job:
                job.last_error = None
            return result
        except Exception as e:
            if job:
                job.last_error = str(e)
            logger.error(f"Job '{name}' failed: {e}")
            raise
        finally:
            finished = datetime.utcnow()
            if job:
                job.last_finished_at = finished
                job.runs += 1
            self._release(name)
            logger.log_with_context(
                logging.DEBUG,
                f"Job '{name}' finished",
                entity_type="job",
                entity_id=name,
                duration_ms=round((finished - started).total_seconds() * 1000, 1),
            )

    def last_finished_at(self, name: str) -> Optional[datetime]:
        job = self.jobs.get(name)
        return job.last_finished_at if job else None

    def next_run_at(self, name: str) -> Optional[datetime]:
        aps_job = self.scheduler.get_job(name)
        # Pending jobs get their first fire time when the scheduler starts
        return getattr(aps_job, "next_run_time", None) if aps_job else None

    def status(self) -> Dict[str, Dict]:
        result = {}
        for name, job in self.jobs.items():
            next_run = self.next_run_at(name)
            result[name] = {
                "running": self.is_running(name),
                "next_run_at": next_run.isoformat() if next_run else None,
                "last_started_at": job.last_started_at.isoformat() if job.last_started_at else None,
                "last_finished_at": job.last_finished_at.isoformat() if job.last_finished_at else None,
                "last_error": job.last_error,
                "runs": job.runs,
                "skipped": job.skipped,
            }
        return result


# ==================
# Job bodies
# ==================

def run_reconciliation(settings: Settings, limit: Optional[int] = None, full: bool = False):
    from .bokun_client import get_bokun_client
    from .reconciliation import ReconciliationEngine

    db = SessionLocal()
    try:
        with get_bokun_client(settings, request_id="scheduler") as client:
            return ReconciliationEngine(db, settings, client).run(limit=limit or settings.sync_batch_limit, full=full)
    finally:
        db.close()


def run_webhook_retry(settings: Settings):
    from .webhook_processor import WebhookProcessor

    db = SessionLocal()
    try:
        return WebhookProcessor(db, settings).retry_failed()
    finally:
        db.close()


def run_webhook_recovery(settings: Settings):
    from .webhook_processor import WebhookProcessor

    db = SessionLocal()
    try:
        return WebhookProcessor(db, settings).recover_stale_pending()
    finally:
        db.close()


def run_message_retry(settings: Settings):
    from .delivery import MessageDeliveryEngine

    db = SessionLocal()
    try:
        return MessageDeliveryEngine(db, settings).retry_failed()
    finally:
        db.close()


def run_download_token_cleanup(settings: Settings):
    from .download_tokens import DownloadTokenService

    db = SessionLocal()
    try:
        return DownloadTokenService(db, settings).cleanup_expired()
    finally:
        db.close()


def run_booking_retention(settings: Settings):
    from .retention import purge_old_bookings
    from .storage import get_blob_store

    db = SessionLocal()
    try:
        return purge_old_bookings(db, settings, get_blob_store(settings))
    finally:
        db.close()


def run_ticket_reminder(settings: Settings):
    from .ticket_reminder import send_ticket_reminder

    db = SessionLocal()
    try:
        return send_ticket_reminder(db, settings)
    finally:
        db.close()


def build_scheduler(settings: Settings) -> JobScheduler:
    scheduler = JobScheduler(settings)
    tz = settings.scheduler_timezone
    poll = IntervalTrigger(seconds=settings.worker_poll_interval, timezone=tz)
    maintenance = daily_trigger(parse_time_of_day(settings.maintenance_time), tz)

    scheduler.register(
        "reconciliation", lambda: run_reconciliation(settings),
        IntervalTrigger(minutes=settings.sync_interval_minutes, timezone=tz),
        run_at_start=True,
    )
    scheduler.register("webhook_retry", lambda: run_webhook_retry(settings), poll, run_at_start=True)
    scheduler.register("webhook_recovery", lambda: run_webhook_recovery(settings), poll, run_at_start=True)
    scheduler.register(
        "message_retry", lambda: run_message_retry(settings),
        IntervalTrigger(minutes=settings.message_retry_interval_minutes, timezone=tz),
    )
    reminder_times = parse_times_of_day(settings.ticket_reminder_times)
    if reminder_times:
        scheduler.register(
            "ticket_reminder", lambda: run_ticket_reminder(settings),
            daily_times_trigger(reminder_times, tz),
        )
    scheduler.register("download_token_cleanup", lambda: run_download_token_cleanup(settings), maintenance)
    scheduler.register("booking_retention", lambda: run_booking_retention(settings), maintenance)
    return scheduler


_scheduler: Optional[JobScheduler] = None


def get_scheduler() -> JobScheduler:
    """Process-wide scheduler; routers use it for the shared run guard."""
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler(get_settings())
    return _scheduler
