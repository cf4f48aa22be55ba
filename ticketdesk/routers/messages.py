import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..exceptions import MessageRetryError, NotFoundError
from ..models.message import MessageChannel
from ..models.message_template import LANGUAGES
from ..repositories.booking_repository import BookingRepository
from ..schemas.message import (
    ChannelAttemptResponse,
    ManualMessageRequest,
    PreviewRequest,
    PreviewResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    TemplateListResponse,
    TemplateResponse,
)
from ..services.delivery import MessageDeliveryEngine
from ..services.storage import BlobStore
from ..services.templates import TemplateRenderer
from ..utils.dependencies import Operator, get_current_operator, get_request_id, get_store
from ..utils.rate_limiter import RATE_LIMITS, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["Messages"])


@router.post("/preview", response_model=PreviewResponse)
def preview_messages(
    preview_request: PreviewRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """Render the ticket message for every channel without sending anything."""
    booking = BookingRepository(db).get(preview_request.booking_id, include_cancelled=True)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    previews = MessageDeliveryEngine(db, settings, store=store).preview(booking, preview_request.language)
    return PreviewResponse(booking_id=booking.id, language=preview_request.language, previews=previews)


@router.get("/templates", response_model=TemplateListResponse)
def list_templates(
    channel: Optional[MessageChannel] = None,
    language: Optional[str] = None,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    templates = TemplateRenderer(db).list(channel.value if channel else None, language)
    return TemplateListResponse(
        templates=[TemplateResponse.model_validate(t) for t in templates],
        languages=LANGUAGES,
    )


@router.post("/send", response_model=ChannelAttemptResponse)
@limiter.limit(RATE_LIMITS["message_send"])
def send_message(
    request: Request,
    message_request: ManualMessageRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """Send a free-text message on one channel."""
    if message_request.booking_id and BookingRepository(db).get(message_request.booking_id, include_cancelled=True) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    attempt = engine.send_manual(
        message_request.channel.value,
        message_request.recipient,
        message_request.content,
        subject=message_request.subject,
        booking_id=message_request.booking_id,
    )
    logger.info(f"Operator {operator.id} sent {attempt.channel} message {attempt.message_id}: success={attempt.success}")
    return ChannelAttemptResponse(**attempt.as_dict())


@router.post("/retry-failed", response_model=RetryFailedResponse)
@limiter.limit(RATE_LIMITS["sync"])
def retry_failed_messages(
    request: Request,
    retry_request: Optional[RetryFailedRequest] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    retry_request = retry_request or RetryFailedRequest()
    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    summary = engine.retry_failed(
        channel=retry_request.channel.value if retry_request.channel else None,
        limit=retry_request.limit,
    )
    return RetryFailedResponse(**summary)


@router.post("/{message_id}/retry", response_model=ChannelAttemptResponse)
@limiter.limit(RATE_LIMITS["message_send"])
def retry_message(
    request: Request,
    message_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """Retry one failed message with its stored content."""
    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    try:
        attempt = engine.retry_message(message_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    except MessageRetryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ChannelAttemptResponse(**attempt.as_dict())
