"""
Domain exceptions.

Routers translate these into HTTP errors; services raise them and
batch jobs catch them per item.
"""

from typing import Optional


class TicketDeskError(Exception):
    """Base class for all domain errors"""


class NotFoundError(TicketDeskError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(TicketDeskError):
    """Illegal state machine move"""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class UpstreamError(TicketDeskError):
    """Failure talking to Bokun, Twilio or SendGrid"""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class BookingDataError(TicketDeskError):
    """Upstream booking data is missing a required field"""


class WebhookValidationError(BookingDataError):
    """Webhook payload can never be processed as sent"""


class MessageRetryError(TicketDeskError):
    """Retry refused: message not failed or retry ceiling reached"""


class DeliveryConfigurationError(TicketDeskError):
    """A delivery channel is used without provider credentials"""


class TicketPreconditionError(TicketDeskError):
    """Booking is not ready to receive tickets"""


class BlobNotFoundError(TicketDeskError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Blob not found: {path}")


class JobAlreadyRunningError(TicketDeskError):
    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' is already running")


class TemplateRenderError(TicketDeskError):
    """Message template missing or not renderable"""


class ChannelUnavailableError(TicketDeskError):
    """Channel cannot be used right now (e.g. WhatsApp window closed)"""
