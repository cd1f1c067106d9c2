"""
Vonage SMS Provider
SMS implementation using the Vonage SMS API (SDK v4).
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from vonage import Auth, Vonage
from vonage_sms import SmsMessage

from .base import SMSProvider, SMSResult

logger = logging.getLogger(__name__)


class VonageSMSProvider(SMSProvider):
    """
    Vonage SMS provider.

    Credentials:
    - VONAGE_API_KEY
    - VONAGE_API_SECRET
    - VONAGE_FROM_NUMBER (fallback sender id)
    """

    def __init__(self, max_sender_length: Optional[int] = None):
        self._client: Optional[Vonage] = None
        self._sms = None

        self._api_key = os.getenv("VONAGE_API_KEY")
        self._api_secret = os.getenv("VONAGE_API_SECRET")
        self._default_from = os.getenv("VONAGE_FROM_NUMBER", os.getenv("VONAGE_SMS_FROM"))
        if max_sender_length:
            self.max_sender_length = max_sender_length

    @property
    def provider_name(self) -> str:
        return "vonage"

    def is_configured(self) -> bool:
        """Check if Vonage SMS credentials are configured."""
        return bool(self._api_key and self._api_secret)

    def _ensure_initialized(self) -> None:
        """Initialize Vonage client if not already done."""
        if self._sms is not None:
            return

        auth = Auth(api_key=self._api_key, api_secret=self._api_secret)
        self._client = Vonage(auth=auth)
        self._sms = self._client.sms
        logger.info("VonageSMSProvider initialized")

    async def send_sms(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SMSResult:
        """
        Send an SMS via Vonage SMS API.

        Args:
            to_number: Destination phone number
            message: SMS content
            from_number: Sender id (optional, uses default)
            metadata: Optional tracking metadata

        Returns:
            SMSResult with send status
        """
        to_number = self._normalize_number(to_number)
        from_number = from_number or self._default_from

        if not self.is_configured():
            return SMSResult(
                success=False,
                provider=self.provider_name,
                to_number=to_number,
                error="Vonage credentials not configured"
            )

        if not from_number:
            return SMSResult(
                success=False,
                provider=self.provider_name,
                to_number=to_number,
                error="No from_number configured. Set VONAGE_FROM_NUMBER environment variable."
            )

        from_number = self.sender_id(from_number)
        logger.info(f"Sending SMS via Vonage: {from_number} -> {to_number[:6]}...")

        try:
            self._ensure_initialized()
            sms_message = SmsMessage(
                to=to_number.lstrip("+"),
                from_=from_number,
                text=message
            )
            response = await asyncio.to_thread(self._sms.send, sms_message)

            if not getattr(response, "messages", None):
                return SMSResult(
                    success=False,
                    provider=self.provider_name,
                    to_number=to_number,
                    error="Unexpected response format from Vonage",
                    metadata=metadata
                )

            msg = response.messages[0]
            if str(getattr(msg, "status", "")) != "0":
                error_text = getattr(msg, "error_text", None) or "Unknown error"
                logger.error(f"Vonage SMS failed: {error_text}")
                return SMSResult(
                    success=False,
                    provider=self.provider_name,
                    to_number=to_number,
                    error=error_text,
                    metadata=metadata
                )

            message_id = getattr(msg, "message_id", None) or "unknown"
            cost = float(getattr(msg, "message_price", 0) or 0)
            logger.info(f"SMS sent successfully: {message_id}")

            return SMSResult(
                success=True,
                message_id=message_id,
                provider=self.provider_name,
                to_number=to_number,
                sent_at=datetime.now(timezone.utc),
                cost=cost,
                metadata=metadata
            )

        except Exception as e:
            logger.error(f"Exception sending SMS via Vonage: {e}", exc_info=True)
            return SMSResult(
                success=False,
                provider=self.provider_name,
                to_number=to_number,
                error=str(e),
                metadata=metadata
            )

