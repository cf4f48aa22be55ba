# Models package
from .booking import Booking, BookingStatus, transition_booking_status
from .webhook_log import WebhookLog, WebhookLogStatus
from .conversation import Conversation, ConversationStatus
from .message_template import MessageTemplate, TemplateType, LANGUAGES, DEFAULT_LANGUAGE
from .message import Message, MessageStatus, MessageChannel, MessageDirection
from .message_attachment import MessageAttachment, ALLOWED_MIME_TYPES, MAX_ATTACHMENT_BYTES
from .download_token import DownloadToken
