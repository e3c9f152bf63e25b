"""
Safaricom M-PESA normalizer.

Two callback shapes arrive on the same endpoint:
- STK Push result:  {"Body": {"stkCallback": {"ResultCode": 0, "CallbackMetadata": {"Item": [...]}}}}
- C2B confirmation: {"TransID": "...", "TransAmount": "500.00", "MSISDN": "...", "BillRefNumber": "..."}

M-PESA timestamps (TransTime, TransactionDate) are compact local time in Nairobi.
"""
import logging
from zoneinfo import ZoneInfo

from ipngate.errors import ParseError
from ipngate.providers.base import PaymentNormalizer
from ipngate.schemas.normalized_payment import NormalizedPayment

logger = logging.getLogger(__name__)

NAIROBI = ZoneInfo("Africa/Nairobi")

# M-PESA Kenya settles in shillings only
MPESA_CURRENCY = "KES"

C2B_KEYS = ("TransID", "TransAmount", "MSISDN", "BillRefNumber")


class MpesaNormalizer(PaymentNormalizer):
    bank_code = "mpesa"
    default_currency = MPESA_CURRENCY

    def _parse(self, raw: dict) -> NormalizedPayment:
        if "Body" in raw:
            return self._parse_stk_callback(raw["Body"])
        if "stkCallback" in raw:
            return self._parse_stk_callback(raw)
        if any(key in raw for key in C2B_KEYS):
            return self._parse_c2b(raw)
        raise ParseError("Unrecognized M-PESA payload shape")

    def _parse_stk_callback(self, body) -> NormalizedPayment:
        callback = body.get("stkCallback") if isinstance(body, dict) else None
        if not isinstance(callback, dict):
            raise ParseError("STK callback missing Body.stkCallback")
        if "ResultCode" not in callback:
            raise ParseError("STK callback missing ResultCode")

        try:
            result_code = int(callback["ResultCode"])
        except (TypeError, ValueError):
            raise ParseError(f"Unparseable STK ResultCode: {callback['ResultCode']!r}")

        metadata = callback.get("CallbackMetadata") or {}
        items = metadata.get("Item", []) if isinstance(metadata, dict) else None
        if not isinstance(items, list):
            raise ParseError("STK CallbackMetadata.Item is not a list")

        values: dict = {}
        for item in items:
            if isinstance(item, dict) and "Name" in item:
                values[item["Name"]] = item.get("Value")

        checkout_id = self._text(callback.get("CheckoutRequestID"))
        currency = MPESA_CURRENCY

        return NormalizedPayment(
            amount=self._amount(values.get("Amount"), currency),
            currency=currency,
            sender_phone=self._phone(values.get("PhoneNumber")),
            sender_name=None,
            sender_account=checkout_id,
            external_reference=checkout_id,
            bank_reference=self._text(values.get("MpesaReceiptNumber")),
            transaction_date=self._timestamp(values.get("TransactionDate"), naive_tz=NAIROBI),
            event_type="payment" if result_code == 0 else "validation_failure",
            result_description=None if result_code == 0 else self._text(callback.get("ResultDesc")),
        )

    def _parse_c2b(self, raw: dict) -> NormalizedPayment:
        currency = MPESA_CURRENCY
        name_parts = [
            self._text(raw.get(key)) for key in ("FirstName", "MiddleName", "LastName")
        ]
        sender_name = " ".join(part for part in name_parts if part) or None
        bill_ref = self._text(raw.get("BillRefNumber"))

        return NormalizedPayment(
            amount=self._amount(raw.get("TransAmount"), currency),
            currency=currency,
            sender_phone=self._phone(raw.get("MSISDN")),
            sender_name=sender_name,
            sender_account=bill_ref,
            external_reference=bill_ref,
            bank_reference=self._text(raw.get("TransID")),
            transaction_date=self._timestamp(raw.get("TransTime"), naive_tz=NAIROBI),
            event_type="payment",
        )
