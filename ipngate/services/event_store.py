"""
Event store query surface - the read side used by the monitoring API.
Nothing here writes; the pipeline stages own every mutation.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.models.ipn_event import IPNEvent
from ipngate.services.dispatcher import queue_stats
from ipngate.services.event_stream import event_summary
from ipngate.services.state_machine import ALL_STATUSES

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 100


def clamp_limit(limit: Optional[int], maximum: int = MAX_PAGE_SIZE) -> int:
    if limit is None:
        return min(DEFAULT_PAGE_SIZE, maximum)
    return max(1, min(int(limit), maximum))


def escape_like(term: str) -> str:
    """Make % and _ in a search term literal (escape char is backslash)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def list_events(
    db: AsyncSession,
    status: Optional[str] = None,
    integration_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    max_limit: int = MAX_PAGE_SIZE,
) -> list[IPNEvent]:
    """Most recent first. Filters combine with AND; search is case-insensitive."""
    query = select(IPNEvent)

    if status:
        query = query.where(IPNEvent.status == status)
    if integration_id:
        query = query.where(IPNEvent.integration_id == integration_id)
    if search and search.strip():
        term = "%" + escape_like(search.strip()) + "%"
        query = query.where(
            or_(
                IPNEvent.external_reference.ilike(term, escape="\\"),
                IPNEvent.bank_reference.ilike(term, escape="\\"),
                IPNEvent.sender_phone.ilike(term, escape="\\"),
                IPNEvent.sender_name.ilike(term, escape="\\"),
            )
        )

    query = query.order_by(IPNEvent.created_at.desc(), IPNEvent.id.desc()).limit(
        clamp_limit(limit, max_limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_event(db: AsyncSession, event_id: uuid.UUID) -> Optional[IPNEvent]:
    return await db.get(IPNEvent, event_id)


def event_detail(event: IPNEvent) -> dict:
    """Full audit view: summary plus both payloads and the diagnostics."""
    detail = event_summary(event)
    detail.update({
        "raw_payload": event.raw_payload,
        "normalized_payload": event.normalized_payload,
        "validation_errors": list(event.validation_errors or []),
        "failure_reason": event.failure_reason,
        "sender_account": event.sender_account,
        "transaction_date": event.transaction_date.isoformat() if event.transaction_date else None,
        "fingerprint": event.fingerprint,
        "duplicate_of_id": str(event.duplicate_of_id) if event.duplicate_of_id else None,
        "source_ip": event.source_ip,
        "correlation_id": event.correlation_id,
        "processing_started_at": (
            event.processing_started_at.isoformat() if event.processing_started_at else None
        ),
        "processing_completed_at": (
            event.processing_completed_at.isoformat() if event.processing_completed_at else None
        ),
    })
    return detail


async def event_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Counts for events created since UTC midnight, with every status key present."""
    now = now or datetime.now(timezone.utc)
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    result = await db.execute(
        select(IPNEvent.status, func.count(IPNEvent.id))
        .where(IPNEvent.created_at >= day_start)
        .group_by(IPNEvent.status)
    )
    by_status = {status: 0 for status in ALL_STATUSES}
    for status, count in result.all():
        by_status[status] = count

    return {
        "today": sum(by_status.values()),
        "by_status": by_status,
    }


async def dashboard_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Event counts for today plus reconciliation queue depth."""
    stats = await event_stats(db, now)
    queue = await queue_stats(db)
    return {
        "today": stats["today"],
        "processed": stats["by_status"]["processed"],
        "failed": stats["by_status"]["failed"],
        "pending": queue["pending"],
        "manual_review": queue["manual_review"],
        "by_status": stats["by_status"],
    }
