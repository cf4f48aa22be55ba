"""
Public ticket downloads: GET /t/<token>.pdf

No authentication; the unguessable token is the credential.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..exceptions import BlobNotFoundError
from ..services.download_tokens import DownloadTokenService
from ..services.storage import BlobStore
from ..utils.dependencies import get_store
from ..utils.rate_limiter import RATE_LIMITS, limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Downloads"])


@router.get("/t/{token}.pdf")
@limiter.limit(RATE_LIMITS["download"])
def download_ticket(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
):
    service = DownloadTokenService(db, settings)
    download = service.resolve(token)
    if download is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")
    if download.is_expired(datetime.utcnow()):
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Link expired")

    try:
        data = store.get(download.storage_path)
    except BlobNotFoundError:
        logger.warning(f"Download token {download.token} points at missing file {download.storage_path}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    service.record_download(download)
    return Response(
        content=data,
        media_type=download.mime_type or "application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{download.filename}"',
            "Cache-Control": "private, no-store",
        },
    )
