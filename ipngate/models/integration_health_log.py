"""
Per-integration callback health log - one row per webhook delivery attempt.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from ipngate.database import Base


class IntegrationHealthLog(Base):
    __tablename__ = "integration_health_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("bank_integrations.id"), nullable=False, index=True
    )
    check_type = Column(String(20), nullable=False, default="callback")
    status = Column(String(20), nullable=False)  # success, failure
    error_message = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    checked_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
