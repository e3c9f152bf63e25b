"""
IPN event - append-only record of every inbound payment notification.

The row is created by the webhook receiver with status=received and the raw
payload exactly as delivered. Pipeline stages fill in the extracted fields and
move the status forward. Rows are never deleted (financial audit trail).
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from sqlalchemy import String, Text, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from ipngate.database import Base
from ipngate.services.state_machine import EventStatus, check_transition


class IPNEvent(Base):
    __tablename__ = "ipn_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_integrations.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.RECEIVED
    )  # received, validated, queued, processed, failed, duplicate
    event_type: Mapped[Optional[str]] = mapped_column(
        String(30)
    )  # payment, reversal, timeout, validation_failure

    # Audit payloads
    raw_payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    normalized_payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Extracted fields (null until normalization)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    currency: Mapped[Optional[str]] = mapped_column(String(3))
    sender_name: Mapped[Optional[str]] = mapped_column(String(255))
    sender_phone: Mapped[Optional[str]] = mapped_column(String(32))
    sender_account: Mapped[Optional[str]] = mapped_column(String(100))
    external_reference: Mapped[Optional[str]] = mapped_column(String(100))
    bank_reference: Mapped[Optional[str]] = mapped_column(String(100))
    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Diagnostics
    validation_errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64))
    duplicate_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ipn_events.id")
    )

    # Request context
    source_ip: Mapped[Optional[str]] = mapped_column(String(64))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    integration: Mapped["BankIntegration"] = relationship(lazy="raise")

    __table_args__ = (
        Index("ix_ipn_events_status", "status"),
        Index("ix_ipn_events_integration_id", "integration_id"),
        Index("ix_ipn_events_created_at", "created_at"),
        Index("ix_ipn_events_external_reference", "external_reference"),
        Index("ix_ipn_events_bank_reference", "bank_reference"),
        Index("ix_ipn_events_fingerprint", "fingerprint"),
    )

    def __init__(self, **kwargs):
        # Status is validated on assignment, so a new row starts life as received
        kwargs.setdefault("status", EventStatus.RECEIVED)
        kwargs.setdefault("validation_errors", [])
        super().__init__(**kwargs)

    @validates("raw_payload")
    def _raw_payload_write_once(self, key, value):
        if self.raw_payload is not None:
            raise ValueError("raw_payload is immutable once written")
        return value

    @validates("status")
    def _status_moves_forward(self, key, value):
        check_transition(self.status, value)
        return value

    def __repr__(self) -> str:
        return f"<IPNEvent {str(self.id)[:8]} status={self.status}>"
