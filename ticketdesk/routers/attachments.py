import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..exceptions import BlobNotFoundError, UpstreamError
from ..models.message_attachment import MessageAttachment
from ..services.storage import BlobStore
from ..utils.dependencies import Operator, get_current_operator, get_store
from ..utils.rate_limiter import RATE_LIMITS, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/attachments", tags=["Attachments"])


def _get_attachment_or_404(db: Session, attachment_id: str) -> MessageAttachment:
    attachment = db.query(MessageAttachment).filter(MessageAttachment.id == attachment_id).first()
    if attachment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
    return attachment


@router.get("/{attachment_id}/download")
@limiter.limit(RATE_LIMITS["download"])
def download_attachment(
    request: Request,
    attachment_id: str,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    attachment = _get_attachment_or_404(db, attachment_id)
    try:
        data = store.get(attachment.storage_path)
    except BlobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment file missing")
    except UpstreamError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return Response(
        content=data,
        media_type=attachment.mime_type or "application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{attachment.original_name}"'},
    )


@router.delete("/{attachment_id}")
def delete_attachment(
    attachment_id: str,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
    operator: Operator = Depends(get_current_operator),
):
    """Delete an attachment that has not been sent yet."""
    attachment = _get_attachment_or_404(db, attachment_id)
    if attachment.message_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Attachment was already sent")

    store.delete(attachment.storage_path)
    db.delete(attachment)
    db.commit()
    logger.info(f"Operator {operator.id} deleted attachment {attachment_id}")
    return {"message": "Attachment deleted", "id": attachment_id}
