"""
Generic bank normalizer - for bank APIs that post a flat JSON object.
Field names vary per bank, so each canonical field is looked up through a
list of aliases and the first one present wins.
"""
from ipngate.providers.base import PaymentNormalizer
from ipngate.schemas.normalized_payment import NormalizedPayment

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "amount": ("amount", "Amount", "transaction_amount"),
    "currency": ("currency", "Currency"),
    "phone": ("phone", "Phone", "sender_phone", "customer_phone"),
    "name": ("name", "Name", "sender_name", "customer_name"),
    "account": ("account", "Account", "sender_account"),
    "reference": ("reference", "Reference", "external_ref", "bill_ref"),
    "transaction_id": ("transaction_id", "TransactionId", "bank_ref"),
    "timestamp": ("timestamp", "Timestamp", "transaction_date"),
}

# Provider status words meaning the bank did not move money
UNSUCCESSFUL_STATUSES = {"failed", "failure", "declined", "rejected", "cancelled", "error"}
REVERSAL_TYPES = {"reversal", "refund", "chargeback"}


def first_present(raw: dict, field: str):
    """Value of the first alias of field that is present and non-empty."""
    for key in FIELD_ALIASES[field]:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


class GenericBankNormalizer(PaymentNormalizer):
    bank_code = "generic"

    def _parse(self, raw: dict) -> NormalizedPayment:
        currency = (self._text(first_present(raw, "currency")) or self.default_currency).upper()
        event_type = self._event_type(raw)

        result_description = None
        if event_type != "payment":
            result_description = self._text(raw.get("status_description") or raw.get("message"))

        return NormalizedPayment(
            amount=self._amount(first_present(raw, "amount"), currency),
            currency=currency,
            sender_phone=self._phone(first_present(raw, "phone")),
            sender_name=self._text(first_present(raw, "name")),
            sender_account=self._text(first_present(raw, "account")),
            external_reference=self._text(first_present(raw, "reference")),
            bank_reference=self._text(first_present(raw, "transaction_id")),
            transaction_date=self._timestamp(first_present(raw, "timestamp")),
            event_type=event_type,
            result_description=result_description,
        )

    @staticmethod
    def _event_type(raw: dict) -> str:
        txn_type = str(raw.get("transaction_type") or raw.get("type") or "").strip().lower()
        if txn_type in REVERSAL_TYPES:
            return "reversal"
        status = str(raw.get("status") or "").strip().lower()
        if status == "timeout":
            return "timeout"
        if status in UNSUCCESSFUL_STATUSES:
            return "validation_failure"
        return "payment"
