"""
Business-rule validation of a NormalizedPayment.
Every rule runs; the failures are collected in order so an operator sees the
complete diagnostic for a rejected notification.
"""
from typing import Optional

from ipngate.config import get_settings
from ipngate.errors import ValidationError
from ipngate.schemas.normalized_payment import NormalizedPayment


def _accepted_currencies(integration) -> set[str]:
    supported = {str(c).upper() for c in (integration.supported_currencies or [])} if integration else set()
    return supported or get_settings().currency_whitelist


def check_known_integration(payment: NormalizedPayment, integration) -> Optional[str]:
    if integration is None or not integration.is_active:
        return "Unknown or inactive integration"
    return None


def check_amount(payment: NormalizedPayment, integration) -> Optional[str]:
    if payment.amount is None:
        return "Missing amount"
    if payment.amount <= 0:
        return f"Amount must be greater than zero (got {payment.amount})"
    return None


def check_currency(payment: NormalizedPayment, integration) -> Optional[str]:
    accepted = _accepted_currencies(integration)
    if payment.currency.upper() not in accepted:
        return f"Currency {payment.currency} is not accepted (allowed: {', '.join(sorted(accepted))})"
    return None


def check_reference(payment: NormalizedPayment, integration) -> Optional[str]:
    if not (payment.bank_reference or payment.external_reference):
        return "Missing transaction reference (bank_reference or external_reference)"
    return None


def check_payment_result(payment: NormalizedPayment, integration) -> Optional[str]:
    if payment.event_type != "payment":
        detail = f": {payment.result_description}" if payment.result_description else ""
        return f"Provider reported {payment.event_type}{detail}"
    return None


RULES = (
    check_known_integration,
    check_amount,
    check_currency,
    check_reference,
    check_payment_result,
)


def collect_errors(payment: NormalizedPayment, integration) -> list[str]:
    """Run every rule in order. Empty list means the payment is valid."""
    errors = []
    for rule in RULES:
        message = rule(payment, integration)
        if message:
            errors.append(message)
    return errors


def validate_payment(payment: NormalizedPayment, integration) -> None:
    """Raise ValidationError carrying every failing rule."""
    errors = collect_errors(payment, integration)
    if errors:
        raise ValidationError(errors)
