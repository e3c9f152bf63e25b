"""
Fingerprint claims - the deduplicator's atomic check-and-insert table.
A row exists once a notification with this fingerprint has been validated.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from ipngate.database import Base


class IPNFingerprint(Base):
    __tablename__ = "ipn_fingerprints"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fingerprint = Column(String(64), nullable=False, unique=True)
    event_id = Column(UUID(as_uuid=True), ForeignKey("ipn_events.id"), nullable=False)
    claimed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
