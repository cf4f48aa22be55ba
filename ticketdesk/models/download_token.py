import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index, Integer, ForeignKey
from ..database import Base

TOKEN_LENGTH = 8


class DownloadToken(Base):
    """
    Short public link to one ticket PDF: <base>/t/<token>.pdf

    The `.pdf` suffix lets WhatsApp treat the URL as a document.
    """
    __tablename__ = "download_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token = Column(String(TOKEN_LENGTH), unique=True, nullable=False)
    attachment_id = Column(String(36), ForeignKey("message_attachments.id", ondelete="CASCADE"), nullable=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True)

    storage_path = Column(String(500), nullable=False)
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), default="application/pdf", nullable=False)

    expires_at = Column(DateTime, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    last_downloaded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_download_token_attachment", "attachment_id"),
        Index("ix_download_token_expires", "expires_at"),
    )

    def is_expired(self, now: datetime = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at

    def record_download(self):
        self.download_count = (self.download_count or 0) + 1
        self.last_downloaded_at = datetime.utcnow()

    def __repr__(self):
        return f"<DownloadToken {self.token} expires={self.expires_at}>"
