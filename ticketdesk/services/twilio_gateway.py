"""
Twilio Gateway

WhatsApp and SMS sends, WhatsApp capability lookups and inbound request
signature validation, all through the official twilio SDK.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from ..config import Settings
from ..exceptions import DeliveryConfigurationError
from ..utils.logging_config import get_logger
from ..utils.phone import WHATSAPP_PREFIX, format_e164, looks_like_mobile, strip_channel_prefix

logger = get_logger(__name__)

# Lookup line types that can receive WhatsApp
WHATSAPP_LINE_TYPES = frozenset({"mobile", "voip", "nonFixedVoip"})


@dataclass
class GatewayResult:
    """Outcome of one provider call"""
    success: bool
    external_id: Optional[str] = None
    provider_status: Optional[str] = None
    error: Optional[str] = None


def provider_error(exc: Exception) -> str:
    if isinstance(exc, TwilioRestException):
        return f"Error {exc.code}: {exc.msg}"
    return str(exc)


class TwilioGateway:
    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.settings.has_twilio_credentials:
                raise DeliveryConfigurationError("Twilio credentials are not configured")
            self._client = Client(self.settings.twilio_account_sid, self.settings.twilio_auth_token)
        return self._client

    @staticmethod
    def whatsapp_address(phone: str) -> str:
        number = format_e164(strip_channel_prefix(phone))
        return f"{WHATSAPP_PREFIX}{number}"

    def _status_callback(self) -> Optional[str]:
        if self.settings.twilio_status_callback_url:
            return self.settings.twilio_status_callback_url
        base = (self.settings.public_base_url or "").rstrip("/")
        return f"{base}/webhooks/twilio/status" if base else None

    def _create(self, **params) -> GatewayResult:
        callback = self._status_callback()
        if callback:
            params["status_callback"] = callback
        try:
            message = self.client.messages.create(**params)
        except (TwilioRestException, TwilioException, DeliveryConfigurationError) as e:
            error = provider_error(e)
            logger.warning(f"Twilio send to {params.get('to')} failed: {error}")
            return GatewayResult(success=False, error=error)
        return GatewayResult(success=True, external_id=message.sid, provider_status=message.status)

    def send_whatsapp(
        self,
        to: str,
        body: Optional[str] = None,
        media_urls: Optional[List[str]] = None,
        content_sid: Optional[str] = None,
        content_variables: Optional[Dict] = None,
    ) -> GatewayResult:
        """Free-form body (+ media) or an approved content template."""
        sender = self.settings.twilio_whatsapp_from
        if not sender:
            return GatewayResult(success=False, error="WhatsApp sender is not configured")

        params = {
            "from_": sender if sender.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{sender}",
            "to": self.whatsapp_address(to),
        }
        if content_sid:
            params["content_sid"] = content_sid
            if content_variables:
                params["content_variables"] = json.dumps(content_variables)
        else:
            params["body"] = body or ""
            if media_urls:
                params["media_url"] = list(media_urls)
        return self._create(**params)

    def send_sms(self, to: str, body: str) -> GatewayResult:
        sender = self.settings.twilio_sms_from
        if not sender:
            return GatewayResult(success=False, error="SMS sender is not configured")
        return self._create(from_=sender, to=format_e164(to), body=body)

    def has_whatsapp(self, phone: str) -> bool:
        """
        Live capability check. Excluded country prefixes are never capable;
        a failed lookup falls back to the mobile-number heuristic.
        """
        number = format_e164(strip_channel_prefix(phone))
        if not number:
            return False
        for prefix in self.settings.whatsapp_excluded_prefix_list:
            if number.startswith(prefix):
                return False

        try:
            lookup = self.client.lookups.v2.phone_numbers(number).fetch(fields="line_type_intelligence")
        except (TwilioRestException, TwilioException, DeliveryConfigurationError) as e:
            logger.info(f"WhatsApp lookup for {number} failed, using heuristic: {e}")
            return looks_like_mobile(number)

        if lookup.valid is False:
            return False
        line_type = (lookup.line_type_intelligence or {}).get("type")
        if not line_type:
            return looks_like_mobile(number)
        return line_type in WHATSAPP_LINE_TYPES

    def validate_request(self, url: str, params: Dict, signature: Optional[str]) -> bool:
        """Check X-Twilio-Signature on an inbound callback."""
        if not self.settings.twilio_validate_signatures:
            return True
        if not signature or not self.settings.twilio_auth_token:
            return False
        return RequestValidator(self.settings.twilio_auth_token).validate(url, params, signature)
