"""
Message Template Resolver
Turns a rule's message_template into the literal text sent to a customer.

Templates use {variable} placeholders. Unknown placeholders are left
untouched so a missing value stays visible in the rendered message.
"""
import logging
import re
from datetime import date
from typing import Dict, Optional

from smartcomm.core.config import ConfigManager
from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import CommunicationContext, parse_date

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

# Single SMS segment
SMS_SEGMENT_LENGTH = 160

SWEDISH_WEEKDAYS = ["mån", "tis", "ons", "tors", "fre", "lör", "sön"]
SWEDISH_MONTHS = [
    "jan", "feb", "mars", "apr", "maj", "juni",
    "juli", "aug", "sep", "okt", "nov", "dec",
]


def format_swedish_date(value: date) -> str:
    """Short Swedish date, e.g. 'tis 14 jan'."""
    return f"{SWEDISH_WEEKDAYS[value.weekday()]} {value.day} {SWEDISH_MONTHS[value.month - 1]}"


def format_amount(value) -> str:
    """Render an amount without a trailing '.0' for whole numbers."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def interpolate_message(template: str, variables: Dict[str, str]) -> str:
    """
    Replace every {identifier} with its variable.

    Single left-to-right pass: substituted values are not re-scanned,
    and identifiers without a variable stay as literal text.
    """
    def replace(match: "re.Match[str]") -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)


class MessageTemplateResolver:
    """Collects the variables available to a message template."""

    def __init__(
        self,
        store: CommunicationStore,
        app_url: str,
        config: Optional[ConfigManager] = None,
    ):
        self.store = store
        self.app_url = app_url.rstrip("/")
        config = config or ConfigManager()
        self.default_customer_name = config.get("templates.default_customer_name", "Kund")
        self.default_business_name = config.get("templates.default_business_name", "Handymate")

    async def resolve_variables(self, context: CommunicationContext) -> Dict[str, str]:
        """
        Resolve template variables for a message.

        Entity-specific variables (quote, booking, invoice) are only
        looked up when the context carries the entity id. Missing source
        data leaves the variable out rather than setting it empty.
        Caller-supplied extra_variables win over everything else.

        Returns:
            Variable name -> value
        """
        business_id = context.business_id
        business = await self.store.get_business(business_id) or {}
        customer = await self.store.get_customer(business_id, context.customer_id) or {}

        variables: Dict[str, str] = {
            "customer_name": customer.get("name") or self.default_customer_name,
            "business_name": business.get("business_name") or self.default_business_name,
        }

        business_phone = business.get("phone_number") or business.get("assigned_phone_number")
        if business_phone:
            variables["business_phone"] = business_phone

        if context.quote_id:
            quote = await self.store.get_quote(business_id, context.quote_id)
            if quote and quote.get("sign_token"):
                variables["quote_link"] = f"{self.app_url}/quote/{quote['sign_token']}"

        if context.booking_id:
            booking = await self.store.get_booking(business_id, context.booking_id)
            if booking:
                booking_date = parse_date(booking.get("booking_date"))
                if booking_date:
                    variables["booking_date"] = format_swedish_date(booking_date)
                if booking.get("booking_time"):
                    variables["booking_time"] = str(booking["booking_time"])[:5]

        if context.invoice_id:
            invoice = await self.store.get_invoice(business_id, context.invoice_id)
            if invoice:
                if invoice.get("invoice_number"):
                    variables["invoice_number"] = str(invoice["invoice_number"])
                variables["invoice_amount"] = format_amount(
                    invoice.get("customer_pays") or invoice.get("total") or 0
                )
                due_date = parse_date(invoice.get("due_date"))
                if due_date:
                    variables["invoice_due_date"] = format_swedish_date(due_date)

        if customer.get("address_line"):
            variables["work_address"] = customer["address_line"]

        variables.update(context.extra_variables)
        return variables

    async def render(self, template: str, context: CommunicationContext) -> str:
        """Resolve variables and interpolate them into `template`."""
        variables = await self.resolve_variables(context)
        message = interpolate_message(template, variables)

        if len(message) > SMS_SEGMENT_LENGTH:
            logger.debug(
                f"Rendered message is {len(message)} chars (exceeds {SMS_SEGMENT_LENGTH}), "
                f"it will be sent as multiple segments"
            )
        return message
