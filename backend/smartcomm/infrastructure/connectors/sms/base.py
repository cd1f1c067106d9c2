"""
SMS Provider Base Classes
Abstract base class for SMS gateways.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class SMSResult:
    """Result of an SMS send operation."""
    success: bool
    message_id: Optional[str] = None
    provider: str = ""
    to_number: str = ""
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    cost: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "message_id": self.message_id,
            "provider": self.provider,
            "to_number": self.to_number,
            "error": self.error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "cost": self.cost,
            "metadata": self.metadata
        }


class SMSProvider(ABC):
    """
    Abstract base class for SMS gateways.

    All SMS providers must implement:
    - send_sms(): Send a single SMS message
    - is_configured(): Check if provider is properly configured
    """

    # Alphanumeric sender ids are limited to 11 characters
    max_sender_length: int = 11

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (e.g., 'vonage', 'elks')."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SMSResult:
        """
        Send an SMS message.

        Args:
            to_number: Destination phone number (E.164 format preferred)
            message: Message content
            from_number: Sender id (truncated to max_sender_length)
            metadata: Optional metadata for tracking

        Returns:
            SMSResult with success status and message_id
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the provider has valid configuration."""
        pass

    def sender_id(self, name: str) -> str:
        """Sender identity as accepted by the gateway."""
        return name[:self.max_sender_length].strip()

    def _normalize_number(self, number: str) -> str:
        """
        Normalize phone number to E.164 format.

        Swedish national numbers (leading 0) are rewritten to +46.
        """
        number = number.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")

        if number.startswith("00"):
            number = "+" + number[2:]
        elif number.startswith("0") and len(number) >= 9:
            number = "+46" + number[1:]
        elif not number.startswith("+") and len(number) >= 10:
            number = "+" + number

        return number
