"""
46elks SMS Provider
SMS implementation using the 46elks HTTP API.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .base import SMSProvider, SMSResult

logger = logging.getLogger(__name__)

ELKS_SMS_ENDPOINT = "https://api.46elks.com/a1/sms"


class ElksSMSProvider(SMSProvider):
    """
    46elks SMS provider.

    Credentials:
    - ELKS_API_USER
    - ELKS_API_PASSWORD
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        max_sender_length: Optional[int] = None,
        timeout: float = 10.0,
    ):
        self._api_user = os.getenv("ELKS_API_USER")
        self._api_password = os.getenv("ELKS_API_PASSWORD")
        self._endpoint = endpoint or ELKS_SMS_ENDPOINT
        self._timeout = timeout
        if max_sender_length:
            self.max_sender_length = max_sender_length

    @property
    def provider_name(self) -> str:
        return "elks"

    def is_configured(self) -> bool:
        return bool(self._api_user and self._api_password)

    async def send_sms(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SMSResult:
        """Send an SMS via 46elks (form-encoded POST, basic auth)."""
        to_number = self._normalize_number(to_number)

        if not self.is_configured():
            return SMSResult(
                success=False,
                provider=self.provider_name,
                to_number=to_number,
                error="46elks credentials not configured"
            )

        sender = self.sender_id(from_number or "Handymate")
        logger.info(f"Sending SMS via 46elks: {sender} -> {to_number[:6]}...")

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._endpoint,
                    auth=(self._api_user, self._api_password),
                    data={"from": sender, "to": to_number, "message": message},
                )
        except httpx.HTTPError as e:
            logger.error(f"46elks request failed: {e}")
            return SMSResult(
                success=False,
                provider=self.provider_name,
                to_number=to_number,
                error=str(e) or "SMS request failed",
                metadata=metadata
            )

        if response.is_success:
            body = response.json()
            logger.info(f"SMS sent successfully: {body.get('id')}")
            return SMSResult(
                success=True,
                message_id=body.get("id"),
                provider=self.provider_name,
                to_number=to_number,
                sent_at=datetime.now(timezone.utc),
                cost=body.get("cost"),
                metadata=metadata
            )

        try:
            error = response.json().get("message") or "SMS failed"
        except ValueError:
            error = response.text or "SMS failed"
        logger.error(f"46elks SMS failed ({response.status_code}): {error}")
        return SMSResult(
            success=False,
            provider=self.provider_name,
            to_number=to_number,
            error=error,
            metadata=metadata
        )
