# Repositories package
from .booking_repository import BookingRepository
from .webhook_log_repository import WebhookLogRepository
from .message_repository import MessageRepository
from .conversation_repository import ConversationRepository
