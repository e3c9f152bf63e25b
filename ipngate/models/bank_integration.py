"""
Bank / mobile-money integrations and the institution accounts attached to them.

One BankIntegration per provider endpoint (/api/v1/ipn/{bank_code}). Its
webhook_config carries the ingress security settings:
    {"ip_whitelist": [...], "signing_secret": "...", "signature_header": "X-Signature",
     "rate_limit_per_minute": 300}
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID, JSONB
from ipngate.database import Base


class BankIntegration(Base):
    __tablename__ = "bank_integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bank_code = Column(String(50), nullable=False, unique=True, index=True)
    bank_name = Column(String(100), nullable=False)
    provider_type = Column(
        String(20), nullable=False, default="bank_api"
    )  # bank_api, mobile_money, card_processor
    webhook_config = Column(JSONB, nullable=False, default=dict)
    supported_currencies = Column(JSONB, nullable=False, default=list)
    environment = Column(String(20), nullable=False, default="production")  # sandbox, production
    is_active = Column(Boolean, nullable=False, default=True)
    health_status = Column(
        String(20), nullable=False, default="unknown"
    )  # healthy, degraded, down, unknown
    last_health_check = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def ip_whitelist(self) -> list[str]:
        return list((self.webhook_config or {}).get("ip_whitelist") or [])

    @property
    def signing_secret(self) -> str:
        return (self.webhook_config or {}).get("signing_secret") or ""

    @property
    def signature_header(self) -> str:
        return (self.webhook_config or {}).get("signature_header") or "X-Signature"

    @property
    def rate_limit_per_minute(self) -> Optional[int]:
        value = (self.webhook_config or {}).get("rate_limit_per_minute")
        return int(value) if value else None

    def __repr__(self) -> str:
        return f"<BankIntegration {self.bank_code} active={self.is_active}>"


class InstitutionBankAccount(Base):
    """A school's collection account (paybill/till/account) on an integration."""
    __tablename__ = "institution_bank_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    institution_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("bank_integrations.id"), nullable=False, index=True
    )
    account_reference = Column(String(100), nullable=True)  # prefix of the payer's bill reference
    account_name = Column(String(255), nullable=True)
    paybill_number = Column(String(20), nullable=True)
    till_number = Column(String(20), nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
