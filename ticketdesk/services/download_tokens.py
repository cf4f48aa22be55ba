"""
Short download links: <base>/t/<token>.pdf

WhatsApp sniffs the media type from the URL, so the `.pdf` suffix is
part of every public link even though tokens are looked up without it.
"""

import secrets
import string
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..models.download_token import DownloadToken, TOKEN_LENGTH
from ..models.message_attachment import MessageAttachment
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
MAX_TOKEN_ATTEMPTS = 10


def generate_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class DownloadTokenService:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def public_url(self, token: DownloadToken) -> str:
        base = (self.settings.public_base_url or "").rstrip("/")
        return f"{base}/t/{token.token}.pdf"

    def _unique_token(self) -> str:
        for _ in range(MAX_TOKEN_ATTEMPTS):
            candidate = generate_token()
            exists = self.db.query(DownloadToken.id).filter(DownloadToken.token == candidate).first()
            if not exists:
                return candidate
        raise RuntimeError("Could not generate a unique download token")

    def token_for(self, attachment: MessageAttachment) -> DownloadToken:
        """Reuse a still-valid token for the attachment, else mint a new one."""
        now = datetime.utcnow()
        existing = self.db.query(DownloadToken).filter(
            DownloadToken.attachment_id == attachment.id,
            DownloadToken.expires_at > now,
        ).order_by(DownloadToken.expires_at.desc()).first()
        if existing:
            return existing

        token = DownloadToken(
            token=self._unique_token(),
            attachment_id=attachment.id,
            booking_id=attachment.booking_id,
            storage_path=attachment.storage_path,
            filename=attachment.original_name,
            mime_type=attachment.mime_type or "application/pdf",
            expires_at=now + timedelta(days=self.settings.download_token_expiry_days),
            download_count=0,
        )
        self.db.add(token)
        self.db.flush()
        logger.info(f"Download token {token.token} created for attachment {attachment.id}")
        return token

    def short_url_for(self, attachment: MessageAttachment) -> str:
        return self.public_url(self.token_for(attachment))

    def resolve(self, token: str) -> Optional[DownloadToken]:
        """Token lookup; a trailing '.pdf' is tolerated."""
        if token.lower().endswith(".pdf"):
            token = token[:-4]
        if len(token) != TOKEN_LENGTH:
            return None
        return self.db.query(DownloadToken).filter(DownloadToken.token == token).first()

    def record_download(self, token: DownloadToken):
        token.record_download()
        self.db.commit()

    def cleanup_expired(self, grace_days: int = 0) -> int:
        cutoff = datetime.utcnow() - timedelta(days=grace_days)
        deleted = self.db.query(DownloadToken).filter(
            DownloadToken.expires_at < cutoff
        ).delete(synchronize_session=False)
        self.db.commit()
        if deleted:
            logger.info(f"Deleted {deleted} expired download tokens")
        return deleted
