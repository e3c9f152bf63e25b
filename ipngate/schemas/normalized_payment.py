"""
Canonical payment record - the universal output of every provider normalizer.
Every IPN payload is mapped into this format before validation and dedup.
"""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_serializer

EventType = Literal["payment", "reversal", "timeout", "validation_failure"]

# ISO 4217 minor units for the currencies providers send us; default 2
CURRENCY_EXPONENTS: dict[str, int] = {
    "KES": 2,
    "UGX": 0,
    "TZS": 2,
    "RWF": 0,
    "USD": 2,
}


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round an amount to the currency's minor unit."""
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), 2)
    return amount.quantize(Decimal(1).scaleb(-exponent))


class NormalizedPayment(BaseModel):
    """
    Provider-independent view of a payment notification.
    Text limits match the ipn_events columns the fields are copied into.
    """
    amount: Optional[Decimal] = Field(default=None, description="Quantized to the currency minor unit")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 code")
    sender_phone: Optional[str] = Field(default=None, max_length=32, description="E.164 format phone number")
    sender_name: Optional[str] = Field(default=None, max_length=255)
    sender_account: Optional[str] = Field(default=None, max_length=100)
    external_reference: Optional[str] = Field(default=None, max_length=100, description="Payer-entered bill/account reference")
    bank_reference: Optional[str] = Field(default=None, max_length=100, description="Provider transaction id")
    transaction_date: datetime
    event_type: EventType = "payment"
    result_description: Optional[str] = Field(default=None, description="Provider message for unsuccessful results")

    @field_serializer("amount", when_used="json")
    def _amount_as_number(self, amount: Optional[Decimal]):
        # JSON number, integral when there is no fractional part (500, 1250.5)
        if amount is None:
            return None
        if amount == amount.to_integral_value():
            return int(amount)
        return float(amount)

    def to_payload(self) -> dict:
        """JSON-safe dict stored as IPNEvent.normalized_payload."""
        return self.model_dump(mode="json")
