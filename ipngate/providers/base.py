"""
Abstract payment normalizer - every provider integration implements this.
CRITICAL: parse() never touches the database or the network. It is a pure
mapping from the raw payload to a NormalizedPayment, so it can be replayed
against stored raw payloads at any time.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from ipngate.errors import ParseError
from ipngate.schemas.normalized_payment import NormalizedPayment, quantize_amount

# Key the receiver uses when a delivery body is not a JSON/form object
UNPARSED_BODY_KEY = "_unparsed_body"

# ipn_events.amount is NUMERIC(14, 2)
MAX_AMOUNT = Decimal("1000000000000")


class PaymentNormalizer(ABC):
    """Strategy interface selected by BankIntegration.bank_code."""

    bank_code: str = ""
    default_currency: str = "KES"

    def __init__(self, default_currency: Optional[str] = None, phone_region: str = "KE"):
        if default_currency:
            self.default_currency = default_currency.upper()
        self.phone_region = phone_region

    def parse(self, raw: Any) -> NormalizedPayment:
        """
        Map a raw provider payload to a NormalizedPayment.
        Raises ParseError if the payload cannot be interpreted at all.
        """
        if not isinstance(raw, dict):
            raise ParseError("Payload is not a JSON object")
        if UNPARSED_BODY_KEY in raw:
            raise ParseError("Payload body is not valid JSON or form data")
        try:
            return self._parse(raw)
        except PydanticValidationError as e:
            raise ParseError(f"Payload fields out of range: {e.errors()[0].get('msg', str(e))}")

    @abstractmethod
    def _parse(self, raw: dict) -> NormalizedPayment:
        ...

    # -- shared field helpers --

    @staticmethod
    def _text(value) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _amount(value, currency: str) -> Optional[Decimal]:
        """None when absent; ParseError when present but not a number."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, bool):
            raise ParseError(f"Unparseable amount: {value!r}")
        try:
            amount = Decimal(str(value).replace(",", "").strip())
            if not amount.is_finite():
                raise ParseError(f"Unparseable amount: {value!r}")
            if abs(amount) >= MAX_AMOUNT:
                raise ParseError(f"Amount out of range: {value!r}")
            return quantize_amount(amount, currency)
        except (InvalidOperation, ValueError):
            raise ParseError(f"Unparseable amount: {value!r}")

    def _phone(self, value) -> Optional[str]:
        from ipngate.utils.phone import normalize_phone_e164
        return normalize_phone_e164(value, self.phone_region)

    @staticmethod
    def _timestamp(value, naive_tz=timezone.utc) -> datetime:
        """
        Accepts ISO 8601, M-Pesa compact YYYYMMDDHHMMSS (as str or int), or
        epoch seconds. Missing values default to now. Naive values are read in naive_tz.
        """
        if value is None or value == "":
            return datetime.now(timezone.utc)

        text = str(value).strip()
        parsed: Optional[datetime] = None

        if text.isdigit() and len(text) == 14:
            try:
                parsed = datetime.strptime(text, "%Y%m%d%H%M%S")
            except ValueError:
                raise ParseError(f"Unparseable transaction time: {value!r}")
        elif text.isdigit() and len(text) in (10, 13):
            seconds = int(text) / (1000 if len(text) == 13 else 1)
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        else:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                raise ParseError(f"Unparseable transaction time: {value!r}")

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=naive_tz)
        return parsed
