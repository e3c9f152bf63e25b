"""
Reconciliation queue - one row per dispatched IPN event.
The unique ipn_event_id makes dispatch idempotent at the database level.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ipngate.database import Base


class MatchStatus:
    PENDING = "pending"
    MATCHED = "matched"
    PARTIAL_MATCH = "partial_match"
    UNMATCHED = "unmatched"
    EXCEPTION = "exception"


# Queue items an operator has to look at
MANUAL_REVIEW_STATUSES = (MatchStatus.PARTIAL_MATCH, MatchStatus.UNMATCHED, MatchStatus.EXCEPTION)


class IPNQueueItem(Base):
    __tablename__ = "ipn_processing_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ipn_event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ipn_events.id"), nullable=False
    )

    # Pre-match from the institution account reference
    institution_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    institution_bank_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("institution_bank_accounts.id")
    )

    # Reconciliation result
    match_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchStatus.PENDING
    )
    match_confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    match_details: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    student_id: Mapped[Optional[str]] = mapped_column(String(64))
    invoice_id: Mapped[Optional[str]] = mapped_column(String(64))
    action_taken: Mapped[Optional[str]] = mapped_column(String(30))  # auto_applied, manual
    processing_notes: Mapped[Optional[str]] = mapped_column(Text)

    # Retry scheduling
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("ipn_event_id", name="uq_ipn_queue_event"),
        Index("ix_ipn_queue_match_status", "match_status"),
        Index("ix_ipn_queue_next_retry_at", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return f"<IPNQueueItem {str(self.id)[:8]} match={self.match_status}>"
