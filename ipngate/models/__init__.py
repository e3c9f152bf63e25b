"""
Database models - import all models here so Alembic can discover them.
"""
from ipngate.models.bank_integration import BankIntegration, InstitutionBankAccount
from ipngate.models.ipn_event import IPNEvent
from ipngate.models.fingerprint import IPNFingerprint
from ipngate.models.processing_queue import IPNQueueItem
from ipngate.models.integration_health_log import IntegrationHealthLog

__all__ = [
    "BankIntegration",
    "InstitutionBankAccount",
    "IPNEvent",
    "IPNFingerprint",
    "IPNQueueItem",
    "IntegrationHealthLog",
]
