import logging
import os
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..exceptions import InvalidTransitionError, JobAlreadyRunningError, TemplateRenderError, TicketPreconditionError
from ..models.booking import Booking, BookingStatus, transition_booking_status
from ..models.message_attachment import ALLOWED_MIME_TYPES, MAX_ATTACHMENT_BYTES, MessageAttachment
from ..repositories.booking_repository import BookingRepository
from ..schemas.booking import (
    BookingCreate,
    BookingDayGroup,
    BookingResponse,
    BookingStats,
    BookingUpdate,
    ChannelDetection,
    GroupedBookingsResponse,
    ImportRequest,
    SyncRequest,
    SyncResponse,
    WizardProgressRequest,
)
from ..schemas.message import AttachmentResponse, DeliveryResponse, MessageResponse, SendTicketRequest
from ..schemas.pagination import PaginatedResponse
from ..services.bokun_client import get_bokun_client
from ..services.delivery import MessageDeliveryEngine
from ..services.reconciliation import ReconciliationEngine
from ..services.scheduler import JobScheduler, get_scheduler, run_reconciliation
from ..services.storage import BlobStore
from ..services.ticket_reminder import to_local
from ..utils.dependencies import Operator, get_current_operator, get_request_id, get_store
from ..utils.rate_limiter import RATE_LIMITS, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])

PDF_MAGIC = b"%PDF"
GROUPED_DAYS_BACK = 30


def _get_booking_or_404(db: Session, booking_id: str, include_cancelled: bool = False) -> Booking:
    booking = BookingRepository(db).get(booking_id, include_cancelled=include_cancelled)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


@router.get("", response_model=PaginatedResponse[BookingResponse])
@limiter.limit(RATE_LIMITS["booking_read"])
def list_bookings(
    request: Request,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    product_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    include_cancelled: bool = False,
    sort_by: str = Query("tour_date", pattern="^(tour_date|created_at|updated_at|customer_name|status)$"),
    sort_dir: str = Query("asc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    items, total = BookingRepository(db).list(
        status=status_filter.value if status_filter else None,
        product_id=product_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        sort_by=sort_by,
        sort_dir=sort_dir,
        page=page,
        page_size=page_size,
        include_cancelled=include_cancelled,
    )
    return PaginatedResponse.create(
        items=[BookingResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=BookingStats)
def booking_stats(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    return BookingStats(**BookingRepository(db).stats(datetime.utcnow()))


@router.get("/grouped", response_model=GroupedBookingsResponse)
@limiter.limit(RATE_LIMITS["booking_read"])
def grouped_bookings(
    request: Request,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    product_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(1000, ge=1, le=2000),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    operator: Operator = Depends(get_current_operator),
):
    """Bookings by local tour day. Starts 30 days back unless date_from is given."""
    tz = ZoneInfo(settings.scheduler_timezone)
    now = datetime.utcnow()
    bookings = BookingRepository(db).list_from(
        date_from=date_from or now - timedelta(days=GROUPED_DAYS_BACK),
        date_to=date_to,
        status=status_filter.value if status_filter else None,
        product_id=product_id,
        search=search,
        limit=limit,
    )

    days: Dict[date, List[Booking]] = {}
    for booking in bookings:
        days.setdefault(to_local(booking.tour_date, tz).date(), []).append(booking)

    today = to_local(now, tz).date()
    groups = []
    for day, day_bookings in days.items():
        if day == today:
            label = "Today"
        elif day == today + timedelta(days=1):
            label = "Tomorrow"
        else:
            label = day.strftime("%A, %b %d")
        groups.append(BookingDayGroup(
            date=day.isoformat(),
            label=label,
            is_today=day == today,
            is_tomorrow=day == today + timedelta(days=1),
            total_bookings=len(day_bookings),
            total_pax=sum(b.pax or 0 for b in day_bookings),
            pending_count=sum(
                1 for b in day_bookings
                if b.status == BookingStatus.PENDING_TICKET.value or b.wizard_abandoned_at is not None
            ),
            bookings=[BookingResponse.model_validate(b) for b in day_bookings],
        ))

    return GroupedBookingsResponse(grouped_bookings=groups, total_days=len(groups), total_bookings=len(bookings))


# ==================
# Reconciliation triggers
# ==================

@router.post("/sync", response_model=SyncResponse)
@limiter.limit(RATE_LIMITS["sync"])
def sync_bookings(
    request: Request,
    sync_request: Optional[SyncRequest] = None,
    settings: Settings = Depends(get_settings),
    scheduler: JobScheduler = Depends(get_scheduler),
    operator: Operator = Depends(get_current_operator),
):
    """
    Run one reconciliation pass now.

    Shares the run guard with the scheduled job, so a second trigger
    while a pass is in flight gets 409.
    """
    sync_request = sync_request or SyncRequest()
    try:
        report = scheduler.run_or_raise(
            "reconciliation",
            lambda: run_reconciliation(settings, limit=sync_request.limit, full=sync_request.full),
        )
    except JobAlreadyRunningError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A sync is already running")

    logger.info(f"Operator {operator.id} triggered sync: {report.synced} synced, aborted={report.aborted}")
    message = "Sync aborted: Bokun search failed" if report.aborted else "Sync completed"
    return SyncResponse(message=message, report=report.as_dict())


@router.post("/auto-sync")
def auto_sync(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    scheduler: JobScheduler = Depends(get_scheduler),
    operator: Operator = Depends(get_current_operator),
):
    """Report sync health and start a background pass when data is missing or stale."""
    with get_bokun_client(settings, request_id=get_request_id(request)) as client:
        summary = ReconciliationEngine(db, settings, client).auto_sync_status(
            scheduler.last_finished_at("reconciliation")
        )

    if summary["sync_triggered"]:
        if scheduler.is_running("reconciliation"):
            summary["sync_triggered"] = False
            summary["message"] = "Sync already running"
        else:
            background_tasks.add_task(scheduler.run_exclusive, "reconciliation")
            summary["message"] = "Background sync started"
    else:
        summary["message"] = "Bookings are up to date"
    return summary


@router.post("/import", response_model=SyncResponse)
@limiter.limit(RATE_LIMITS["import"])
def import_bookings(
    request: Request,
    import_request: ImportRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    scheduler: JobScheduler = Depends(get_scheduler),
    operator: Operator = Depends(get_current_operator),
):
    """Import bookings from a past date range. Cancelled bookings are skipped."""
    if import_request.end_date < import_request.start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must not be before start_date")

    def do_import():
        with get_bokun_client(settings, request_id=get_request_id(request)) as client:
            return ReconciliationEngine(db, settings, client).import_historical(
                import_request.start_date, import_request.end_date, import_request.page_size
            )

    try:
        report = scheduler.run_or_raise("historical_import", do_import)
    except JobAlreadyRunningError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An import is already running")

    logger.info(f"Operator {operator.id} imported {report.imported} bookings ({report.updated} updated)")
    return SyncResponse(message="Import completed", report=report.as_dict())


# ==================
# Single booking
# ==================

@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    return _get_booking_or_404(db, booking_id, include_cancelled=True)


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["booking_write"])
def create_booking(
    request: Request,
    booking_data: BookingCreate,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Manual booking entry for sales made outside Bokun."""
    repo = BookingRepository(db)
    if repo.get_by_confirmation_code(booking_data.bokun_booking_id, include_cancelled=True):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A booking with this confirmation code exists")

    booking = Booking(status=BookingStatus.PENDING_TICKET.value, **booking_data.model_dump())
    db.add(booking)
    db.commit()
    db.refresh(booking)
    logger.info(f"Operator {operator.id} created booking {booking.bokun_booking_id}")
    return booking


@router.put("/{booking_id}", response_model=BookingResponse)
@limiter.limit(RATE_LIMITS["booking_write"])
def update_booking(
    request: Request,
    booking_id: str,
    booking_data: BookingUpdate,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Update operator-owned fields. Upstream fields are left to sync."""
    booking = _get_booking_or_404(db, booking_id)
    values = booking_data.model_dump(exclude_unset=True)

    target_status = values.pop("status", None)
    if target_status is not None:
        try:
            booking.status = transition_booking_status(booking.status, target_status).value
        except InvalidTransitionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if "wizard_last_step" in values and booking.wizard_started_at is None:
        booking.wizard_started_at = datetime.utcnow()

    for key, value in values.items():
        setattr(booking, key, value)

    db.commit()
    db.refresh(booking)
    return booking


@router.post("/{booking_id}/wizard-progress", response_model=BookingResponse)
@limiter.limit(RATE_LIMITS["booking_write"])
def update_wizard_progress(
    request: Request,
    booking_id: str,
    progress: WizardProgressRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    booking = _get_booking_or_404(db, booking_id)
    booking.record_wizard_progress(progress.action, progress.step, datetime.utcnow())
    db.commit()
    db.refresh(booking)
    return booking


@router.delete("/{booking_id}")
@limiter.limit(RATE_LIMITS["booking_write"])
def cancel_booking(
    request: Request,
    booking_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Soft-cancel. The row is kept and hidden from default lists."""
    booking = _get_booking_or_404(db, booking_id)
    BookingRepository(db).cancel(booking)
    db.commit()
    logger.info(f"Operator {operator.id} cancelled booking {booking.bokun_booking_id}")
    return {"message": "Booking cancelled", "id": booking.id}


# ==================
# Delivery
# ==================

@router.get("/{booking_id}/detect-channel", response_model=ChannelDetection)
def detect_channel(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    booking = _get_booking_or_404(db, booking_id)
    engine = MessageDeliveryEngine(db, settings, store=store)
    return ChannelDetection(**engine.detect_channel(booking))


@router.post("/{booking_id}/send-ticket", response_model=DeliveryResponse)
@limiter.limit(RATE_LIMITS["message_send"])
def send_ticket(
    request: Request,
    booking_id: str,
    send_request: SendTicketRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """
    Send the uploaded ticket PDFs to the customer.

    422 when the booking is not ready (no reference number, missing
    audio credentials, attachments not belonging to it).
    """
    booking = _get_booking_or_404(db, booking_id, include_cancelled=True)
    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    custom = send_request.custom_message.model_dump() if send_request.custom_message else None
    try:
        result = engine.send_ticket(booking, send_request.language, send_request.attachment_ids, custom)
    except (TicketPreconditionError, TemplateRenderError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return DeliveryResponse(**result.as_dict())


@router.get("/{booking_id}/messages", response_model=List[MessageResponse])
def booking_messages(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    booking = _get_booking_or_404(db, booking_id, include_cancelled=True)
    return MessageDeliveryEngine(db, settings, store=store).history(booking)


# ==================
# Ticket attachments
# ==================

@router.post("/{booking_id}/attachments", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["upload"])
async def upload_attachment(
    request: Request,
    booking_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """Upload one ticket PDF for a booking."""
    booking = _get_booking_or_404(db, booking_id)

    data = await file.read(MAX_ATTACHMENT_BYTES + 1)
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB",
        )
    if file.content_type not in ALLOWED_MIME_TYPES or not data.startswith(PDF_MAGIC):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only PDF files are accepted")

    original_name = os.path.basename(file.filename or "ticket.pdf")[:255] or "ticket.pdf"
    stored_name = f"{uuid.uuid4()}.pdf"
    storage_path = f"attachments/{booking.id}/{stored_name}"
    size = store.put(storage_path, data, "application/pdf")

    attachment = MessageAttachment(
        booking_id=booking.id,
        original_name=original_name,
        stored_name=stored_name,
        storage_path=storage_path,
        mime_type="application/pdf",
        size=size,
    )
    db.add(attachment)
    db.commit()
    db.refresh(attachment)
    logger.info(f"Attachment {attachment.id} ({size} bytes) uploaded for booking {booking.bokun_booking_id}")
    return attachment


@router.get("/{booking_id}/attachments", response_model=List[AttachmentResponse])
def list_attachments(
    booking_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    booking = _get_booking_or_404(db, booking_id, include_cancelled=True)
    return db.query(MessageAttachment).filter(
        MessageAttachment.booking_id == booking.id
    ).order_by(MessageAttachment.created_at.asc()).all()
