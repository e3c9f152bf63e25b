"""
Queue dispatcher - hands validated, first-seen events to the reconciliation queue.

Idempotent at two levels: only a validated event is dispatched (queued and
terminal events are a no-op), and ipn_processing_queue.ipn_event_id is unique
so a re-dispatch after a crash cannot create a second queue row.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.config import get_settings
from ipngate.database import insert_if_absent
from ipngate.errors import DispatchError
from ipngate.models.bank_integration import InstitutionBankAccount
from ipngate.models.ipn_event import IPNEvent
from ipngate.models.processing_queue import IPNQueueItem, MatchStatus, MANUAL_REVIEW_STATUSES
from ipngate.services.event_stream import publish_ipn_event
from ipngate.services.state_machine import EventStatus, transition

logger = logging.getLogger(__name__)


async def match_institution_account(
    db: AsyncSession,
    integration_id,
    reference: Optional[str],
) -> Optional[InstitutionBankAccount]:
    """Enabled account on this integration whose account_reference is the longest prefix of reference."""
    if not reference:
        return None
    result = await db.execute(
        select(InstitutionBankAccount).where(
            InstitutionBankAccount.integration_id == integration_id,
            InstitutionBankAccount.is_enabled.is_(True),
            InstitutionBankAccount.account_reference.is_not(None),
        )
    )
    ref = reference.strip().upper()
    best = None
    for account in result.scalars().all():
        prefix = (account.account_reference or "").strip().upper()
        if prefix and ref.startswith(prefix):
            if best is None or len(prefix) > len(best.account_reference.strip()):
                best = account
    return best


async def dispatch(db: AsyncSession, event) -> bool:
    """
    Queue a validated event for reconciliation and mark it queued.

    Returns True if the event moved to queued, False if it was not validated.
    Raises DispatchError when the queue write fails; the event is left
    validated and the dispatch retry worker picks it up again.
    """
    event_id = event.id
    settings = get_settings()
    now = datetime.now(timezone.utc)

    try:
        # Re-read under lock: the caller's copy may predate a concurrent transition
        result = await db.execute(
            select(IPNEvent)
            .where(IPNEvent.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        event = result.scalar_one_or_none()
        if event is None or event.status != EventStatus.VALIDATED:
            status = event.status if event is not None else None
            logger.debug("Dispatch skipped for %s: status=%s", str(event_id)[:8], status)
            return False

        account = await match_institution_account(
            db, event.integration_id, event.external_reference or event.sender_account,
        )
        queue_item_id = await insert_if_absent(
            db,
            IPNQueueItem,
            {
                "id": uuid.uuid4(),
                "ipn_event_id": event_id,
                "institution_id": account.institution_id if account else None,
                "institution_bank_account_id": account.id if account else None,
                "match_status": MatchStatus.PENDING,
                "match_confidence": 0,
                "match_details": {},
                "retry_count": 0,
                "max_retries": settings.reconciliation_max_retries,
                "created_at": now,
            },
            conflict_columns=["ipn_event_id"],
        )
        if queue_item_id is None:
            logger.info("Queue row already exists for %s", str(event_id)[:8])

        transition(event, EventStatus.QUEUED)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Dispatch failed for %s: %s", str(event_id)[:8], str(e),
            extra={"event_id": str(event_id)},
        )
        raise DispatchError(f"Reconciliation queue unavailable for {event_id}") from e

    logger.info(
        "IPN %s queued for reconciliation", str(event_id)[:8],
        extra={"event_id": str(event_id), "status": EventStatus.QUEUED},
    )
    await publish_ipn_event(event)
    return True


async def queue_stats(db: AsyncSession) -> dict:
    """Open queue items: pending reconciliation and awaiting manual review."""
    result = await db.execute(
        select(IPNQueueItem.match_status, func.count(IPNQueueItem.id))
        .where(IPNQueueItem.processed_at.is_(None))
        .group_by(IPNQueueItem.match_status)
    )
    counts = {status: count for status, count in result.all()}
    return {
        "pending": counts.get(MatchStatus.PENDING, 0),
        "manual_review": sum(counts.get(s, 0) for s in MANUAL_REVIEW_STATUSES),
    }
