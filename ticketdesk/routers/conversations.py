"""
Customer conversations (WhatsApp and SMS threads)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..exceptions import ChannelUnavailableError, NotFoundError
from ..models.conversation import Conversation, ConversationStatus
from ..models.message import MessageChannel
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.message_repository import MessageRepository
from ..schemas.conversation import (
    ConversationDetail,
    ConversationResponse,
    LinkBookingRequest,
    ReplyRequest,
    WhatsAppWindow,
)
from ..schemas.message import ChannelAttemptResponse, MessageResponse
from ..schemas.pagination import PaginatedResponse
from ..services.conversation_tracker import ConversationTracker
from ..services.delivery import MessageDeliveryEngine
from ..services.storage import BlobStore
from ..utils.dependencies import Operator, get_current_operator, get_request_id, get_store
from ..utils.rate_limiter import RATE_LIMITS, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["Conversations"])

CONVERSATION_MESSAGE_LIMIT = 200


def _get_conversation_or_404(tracker: ConversationTracker, conversation_id: str) -> Conversation:
    try:
        return tracker.get(conversation_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")


@router.get("", response_model=PaginatedResponse[ConversationResponse])
def list_conversations(
    status_filter: Optional[ConversationStatus] = Query(None, alias="status"),
    channel: Optional[MessageChannel] = None,
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    items, total = ConversationRepository(db).list(
        status=status_filter.value if status_filter else None,
        channel=channel.value if channel else None,
        unread_only=unread_only,
        page=page,
        page_size=page_size,
    )
    return PaginatedResponse.create(
        items=[ConversationResponse.model_validate(c) for c in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Thread with its messages (oldest first) and the WhatsApp reply window."""
    tracker = ConversationTracker(db)
    conversation = _get_conversation_or_404(tracker, conversation_id)
    messages = MessageRepository(db).for_conversation(conversation.id, limit=CONVERSATION_MESSAGE_LIMIT)

    detail = ConversationResponse.model_validate(conversation).model_dump()
    return ConversationDetail(
        **detail,
        messages=[MessageResponse.model_validate(m) for m in messages],
        window=WhatsAppWindow(**tracker.whatsapp_window(conversation)),
    )


@router.post("/{conversation_id}/reply", response_model=ChannelAttemptResponse)
@limiter.limit(RATE_LIMITS["message_send"])
def reply_to_conversation(
    request: Request,
    conversation_id: str,
    reply: ReplyRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    conversation = _get_conversation_or_404(ConversationTracker(db), conversation_id)
    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    try:
        attempt = engine.send_reply(conversation, reply.content)
    except ChannelUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info(f"Operator {operator.id} replied in conversation {conversation.id}: success={attempt.success}")
    return ChannelAttemptResponse(**attempt.as_dict())


@router.post("/{conversation_id}/read", response_model=ConversationResponse)
def mark_conversation_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    tracker = ConversationTracker(db)
    return tracker.mark_read(_get_conversation_or_404(tracker, conversation_id))


@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
def archive_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    tracker = ConversationTracker(db)
    return tracker.archive(_get_conversation_or_404(tracker, conversation_id))


@router.post("/{conversation_id}/reactivate", response_model=ConversationResponse)
def reactivate_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    tracker = ConversationTracker(db)
    return tracker.reactivate(_get_conversation_or_404(tracker, conversation_id))


@router.post("/{conversation_id}/link", response_model=ConversationResponse)
def link_conversation(
    conversation_id: str,
    link_request: LinkBookingRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Attach the thread (and its messages) to a booking."""
    tracker = ConversationTracker(db)
    conversation = _get_conversation_or_404(tracker, conversation_id)
    try:
        return tracker.link_to_booking(conversation, link_request.booking_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
