"""
Email gateway using SendGrid for ticket emails.

Ticket PDFs travel as base64 attachments; replies go to MAIL_REPLY_TO
when it is configured.
"""

import base64
import html
from dataclasses import dataclass
from typing import List, Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Attachment,
    Disposition,
    Email,
    FileContent,
    FileName,
    FileType,
    Mail,
    To,
)

from ..config import Settings
from ..utils.logging_config import get_logger
from .twilio_gateway import GatewayResult

logger = get_logger(__name__)


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


def text_to_html(text: str) -> str:
    """Plain rendered template -> minimal HTML body."""
    paragraphs = [p for p in (text or "").split("\n\n") if p.strip()]
    return "".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    )


class EmailGateway:
    def __init__(self, settings: Settings, client: Optional[SendGridAPIClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Optional[SendGridAPIClient]:
        if self._client is None and self.settings.sendgrid_api_key:
            self._client = SendGridAPIClient(self.settings.sendgrid_api_key)
        return self._client

    def send_email(
        self,
        to: str,
        subject: str,
        text: str,
        attachments: Optional[List[EmailAttachment]] = None,
        html_content: Optional[str] = None,
    ) -> GatewayResult:
        if not self.client:
            logger.error(f"[EMAIL] Cannot send email to {to} - SendGrid not configured")
            return GatewayResult(success=False, error="SendGrid is not configured")

        message = Mail(
            from_email=Email(self.settings.mail_from_email, self.settings.mail_from_name),
            to_emails=To(to),
            subject=subject,
            plain_text_content=text,
            html_content=html_content or text_to_html(text),
        )
        if self.settings.mail_reply_to:
            message.reply_to = Email(self.settings.mail_reply_to)

        for item in attachments or []:
            message.add_attachment(Attachment(
                FileContent(base64.b64encode(item.content).decode("ascii")),
                FileName(item.filename),
                FileType(item.mime_type),
                Disposition("attachment"),
            ))

        try:
            response = self.client.send(message)
        except HTTPError as e:
            error = f"SendGrid {e.status_code}: {e.body}"
            logger.error(f"[EMAIL] Failed to send email to {to} - {error}")
            return GatewayResult(success=False, error=error)
        except OSError as e:
            logger.error(f"[EMAIL] Network error sending email to {to}: {e}")
            return GatewayResult(success=False, error=str(e))

        if 200 <= response.status_code < 300:
            message_id = response.headers.get("X-Message-Id") if response.headers else None
            logger.info(f"[EMAIL] Email sent to {to} - subject: {subject}")
            return GatewayResult(success=True, external_id=message_id, provider_status="accepted")

        logger.error(f"[EMAIL] Failed to send email to {to} - status: {response.status_code}")
        return GatewayResult(success=False, error=f"SendGrid status {response.status_code}")
