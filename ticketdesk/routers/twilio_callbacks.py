"""
Twilio callbacks: message status updates and inbound WhatsApp/SMS.

Both endpoints are public and authenticated by X-Twilio-Signature.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from twilio.twiml.messaging_response import MessagingResponse

from ..config import Settings, get_settings
from ..database import get_db
from ..services.conversation_tracker import ConversationTracker
from ..services.delivery import MessageDeliveryEngine
from ..services.twilio_gateway import TwilioGateway
from ..services.storage import BlobStore
from ..utils.dependencies import get_request_id, get_store
from ..utils.logging_config import get_audit_logger
from ..utils.rate_limiter import RATE_LIMITS, get_real_client_ip, limiter

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

router = APIRouter(prefix="/webhooks/twilio", tags=["Twilio"])


def _signed_url(request: Request, settings: Settings) -> str:
    """The URL Twilio signed: the public one when we sit behind a proxy."""
    if settings.public_base_url:
        url = settings.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


async def _verified_form(request: Request, settings: Settings) -> Dict[str, str]:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    signature = request.headers.get("X-Twilio-Signature")

    if not TwilioGateway(settings).validate_request(_signed_url(request, settings), params, signature):
        audit_logger.log_with_context(
            logging.WARNING,
            f"[{get_request_id(request)}] Twilio callback rejected: invalid signature",
            entity_type="twilio_callback",
            client_ip=get_real_client_ip(request),
            path=request.url.path,
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")
    return params


def _empty_twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="application/xml")


@router.post("/status")
@limiter.limit(RATE_LIMITS["webhook"])
async def message_status_callback(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
):
    params = await _verified_form(request, settings)
    message_sid = params.get("MessageSid") or params.get("SmsSid")
    message_status = params.get("MessageStatus") or params.get("SmsStatus")
    if not message_sid or not message_status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MessageSid and MessageStatus are required")

    engine = MessageDeliveryEngine(db, settings, store=store, request_id=get_request_id(request))
    updated = engine.handle_status_callback(
        message_sid,
        message_status,
        error_code=params.get("ErrorCode"),
        error_message=params.get("ErrorMessage"),
    )
    return {"received": True, "updated": updated}


@router.post("/incoming")
@limiter.limit(RATE_LIMITS["webhook"])
async def incoming_message(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Store a customer's WhatsApp/SMS message and answer with empty TwiML."""
    params = await _verified_form(request, settings)
    sender = params.get("From")
    if not sender:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="From is required")

    ConversationTracker(db).record_inbound(
        sender,
        params.get("Body", ""),
        external_id=params.get("MessageSid") or params.get("SmsSid"),
        profile_name=params.get("ProfileName"),
    )
    return _empty_twiml()
