"""
SMS Connectors Package
Provides SMS sending via Vonage or 46elks.
"""
from typing import Optional

from smartcomm.core.config import ConfigManager

from .base import SMSProvider, SMSResult
from .elks_sms import ElksSMSProvider
from .vonage_sms import VonageSMSProvider


def get_sms_provider(name: str = "vonage", config: Optional[ConfigManager] = None) -> SMSProvider:
    """
    Create the SMS gateway by name.

    Raises:
        ValueError: If the provider is unknown
    """
    config = config or ConfigManager()
    provider_config = config.get(f"providers.sms.{name}", {}) or {}

    if name == "vonage":
        return VonageSMSProvider(max_sender_length=provider_config.get("max_sender_length"))
    if name == "elks":
        return ElksSMSProvider(
            endpoint=provider_config.get("endpoint"),
            max_sender_length=provider_config.get("max_sender_length"),
        )
    raise ValueError(f"Unknown SMS provider: {name}. Available: vonage, elks")


__all__ = [
    "SMSProvider",
    "SMSResult",
    "VonageSMSProvider",
    "ElksSMSProvider",
    "get_sms_provider",
]
