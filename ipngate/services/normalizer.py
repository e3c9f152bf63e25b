"""
Normalization stage - raw provider payload to NormalizedPayment.
A payload that cannot be parsed is a recorded outcome (received -> failed),
never an exception escaping the pipeline.
"""
import logging
from typing import Optional

from ipngate.config import get_settings
from ipngate.errors import ParseError
from ipngate.providers import get_normalizer
from ipngate.schemas.normalized_payment import NormalizedPayment
from ipngate.services.state_machine import EventStatus, transition

logger = logging.getLogger(__name__)


def apply_extracted_fields(event, payment: NormalizedPayment) -> None:
    """Copy the canonical fields onto the IPNEvent columns."""
    event.event_type = payment.event_type
    event.amount = payment.amount
    event.currency = payment.currency
    event.sender_name = payment.sender_name
    event.sender_phone = payment.sender_phone
    event.sender_account = payment.sender_account
    event.external_reference = payment.external_reference
    event.bank_reference = payment.bank_reference
    event.transaction_date = payment.transaction_date


def normalize_event(event, integration) -> Optional[NormalizedPayment]:
    """
    Parse event.raw_payload with the integration's normalizer.
    Returns the NormalizedPayment, or None after moving the event to failed.
    """
    settings = get_settings()
    supported = integration.supported_currencies or []
    default_currency = supported[0] if supported else settings.default_currency

    normalizer = get_normalizer(
        integration.bank_code,
        default_currency=default_currency,
        phone_region=settings.default_phone_region,
    )

    try:
        payment = normalizer.parse(event.raw_payload)
    except ParseError as e:
        logger.warning(
            "Normalization failed for %s: %s", str(event.id)[:8], str(e),
            extra={"event_id": str(event.id), "bank_code": integration.bank_code},
        )
        event.validation_errors = [f"Normalization failed: {e}"]
        transition(event, EventStatus.FAILED)
        return None

    apply_extracted_fields(event, payment)
    return payment
