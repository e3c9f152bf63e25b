"""
Provider normalizer registry.
Each BankIntegration.bank_code maps to a PaymentNormalizer strategy; codes
without a dedicated strategy use the generic bank normalizer.
"""
from typing import Optional

from ipngate.providers.base import PaymentNormalizer
from ipngate.providers.generic_bank import GenericBankNormalizer
from ipngate.providers.mpesa import MpesaNormalizer

NORMALIZERS: dict[str, type[PaymentNormalizer]] = {
    MpesaNormalizer.bank_code: MpesaNormalizer,
    GenericBankNormalizer.bank_code: GenericBankNormalizer,
}


def get_normalizer(
    bank_code: str,
    default_currency: Optional[str] = None,
    phone_region: str = "KE",
) -> PaymentNormalizer:
    normalizer_cls = NORMALIZERS.get((bank_code or "").lower(), GenericBankNormalizer)
    return normalizer_cls(default_currency=default_currency, phone_region=phone_region)
