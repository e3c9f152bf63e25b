"""
Downstream reconciliation - matching queued IPN events against invoices.

Two entry points move a queued event to its terminal status:
- the queue processor posts each pending item to the reconciliation service
  and applies the confidence it returns (auto-apply, manual review, retry);
- the outcome callback, used by the reconciliation service or an operator
  resolving a manual-review item.
Events waiting for manual review stay queued.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.config import get_settings
from ipngate.errors import InvalidTransition
from ipngate.models.ipn_event import IPNEvent
from ipngate.models.processing_queue import IPNQueueItem, MatchStatus, MANUAL_REVIEW_STATUSES
from ipngate.services.event_stream import publish_ipn_event
from ipngate.services.state_machine import EventStatus, is_terminal, transition

logger = logging.getLogger(__name__)

OUTCOMES = (EventStatus.PROCESSED, EventStatus.FAILED)


async def _queue_item_for(db: AsyncSession, event_id) -> Optional[IPNQueueItem]:
    result = await db.execute(
        select(IPNQueueItem).where(IPNQueueItem.ipn_event_id == event_id)
    )
    return result.scalar_one_or_none()


async def record_outcome(
    db: AsyncSession,
    event_id: uuid.UUID,
    outcome: str,
    reason: Optional[str] = None,
    actor: str = "reconciliation",
) -> Optional[IPNEvent]:
    """
    Apply a downstream outcome (processed or failed) to a queued event.

    Returns None if the event does not exist. An event that is already terminal
    is returned unchanged, so a retried callback is harmless. Raises
    InvalidTransition for an event that never reached queued.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"Unsupported outcome: {outcome}")

    result = await db.execute(
        select(IPNEvent).where(IPNEvent.id == event_id).with_for_update()
    )
    event = result.scalar_one_or_none()
    if event is None:
        return None

    if is_terminal(event.status):
        if event.status != outcome:
            logger.warning(
                "Ignoring %s outcome for %s: already %s",
                outcome, str(event_id)[:8], event.status,
            )
        return event

    if event.status != EventStatus.QUEUED:
        raise InvalidTransition(event.status, outcome)

    now = datetime.now(timezone.utc)
    if outcome == EventStatus.FAILED:
        event.failure_reason = reason or "Reconciliation failed"
    transition(event, outcome)

    item = await _queue_item_for(db, event_id)
    if item is not None:
        item.processed_at = now
        item.updated_at = now
        item.action_taken = "manual_review" if item.match_status in MANUAL_REVIEW_STATUSES else "callback"
        if reason:
            item.processing_notes = reason

    await db.commit()
    logger.info(
        "IPN %s %s by %s", str(event_id)[:8], outcome, actor,
        extra={"event_id": str(event_id), "status": outcome},
    )
    await publish_ipn_event(event)
    return event


async def due_queue_items(db: AsyncSession, now: datetime, batch_size: int) -> list[IPNQueueItem]:
    """Pending items whose retry time has come, locked for this worker."""
    result = await db.execute(
        select(IPNQueueItem)
        .join(IPNEvent, IPNEvent.id == IPNQueueItem.ipn_event_id)
        .where(
            IPNEvent.status == EventStatus.QUEUED,
            IPNQueueItem.match_status == MatchStatus.PENDING,
            IPNQueueItem.processed_at.is_(None),
            IPNQueueItem.retry_count < IPNQueueItem.max_retries,
            or_(IPNQueueItem.next_retry_at.is_(None), IPNQueueItem.next_retry_at <= now),
        )
        .order_by(IPNQueueItem.created_at)
        .limit(batch_size)
        .with_for_update(skip_locked=True, of=IPNQueueItem)
    )
    return list(result.scalars().all())


def reconciliation_request(event: IPNEvent, item: IPNQueueItem) -> dict:
    """Body posted to the reconciliation service."""
    return {
        "ipn_event_id": str(event.id),
        "queue_item_id": str(item.id),
        "institution_id": str(item.institution_id) if item.institution_id else None,
        "attempt": item.retry_count + 1,
        "payment": event.normalized_payload,
    }


def _schedule_retry(item: IPNQueueItem, now: datetime, note: str) -> bool:
    """Bump the retry counter. Returns True when retries are exhausted."""
    settings = get_settings()
    item.retry_count += 1
    item.processing_notes = note
    if item.retry_count >= item.max_retries:
        item.next_retry_at = None
        return True
    item.next_retry_at = now + timedelta(minutes=settings.reconciliation_retry_minutes)
    return False


async def reconcile_item(
    db: AsyncSession,
    item: IPNQueueItem,
    event: IPNEvent,
    client: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> str:
    """
    Ask the reconciliation service to match one queue item and apply the reply.
    Returns the item's resulting match_status. Does not commit.
    """
    from ipngate.utils.alerting import AlertType, send_alert

    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    item.updated_at = now

    try:
        response = await client.post(
            settings.reconciliation_url,
            json=reconciliation_request(event, item),
            timeout=settings.reconciliation_timeout_seconds,
        )
        response.raise_for_status()
        reply = response.json()
        if not isinstance(reply, dict):
            raise ValueError("reply is not a JSON object")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Reconciliation call failed for %s: %s", str(event.id)[:8], str(e))
        if _schedule_retry(item, now, f"Reconciliation call failed: {e}"):
            item.match_status = MatchStatus.EXCEPTION
            await send_alert(
                AlertType.RECONCILIATION_EXHAUSTED,
                f"IPN {str(event.id)[:8]} moved to manual review after {item.retry_count} failed calls",
                extra={"event_id": str(event.id)},
            )
        return item.match_status

    try:
        confidence = int(reply.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0
    item.match_confidence = max(0, min(confidence, 100))
    item.match_details = {
        key: reply[key] for key in ("matched_by", "candidates", "details") if key in reply
    }

    if reply.get("match_status") == MatchStatus.EXCEPTION:
        item.match_status = MatchStatus.EXCEPTION
        item.processing_notes = reply.get("reason") or "Reconciliation service flagged an exception"
    elif item.match_confidence >= settings.match_confidence_threshold:
        item.match_status = MatchStatus.MATCHED
        item.student_id = reply.get("student_id")
        item.invoice_id = reply.get("invoice_id")
        item.action_taken = "auto_applied"
        item.processed_at = now
        transition(event, EventStatus.PROCESSED)
    elif item.match_confidence >= settings.partial_match_threshold:
        item.match_status = MatchStatus.PARTIAL_MATCH
        item.student_id = reply.get("student_id")
        item.invoice_id = reply.get("invoice_id")
        item.processing_notes = f"Partial match ({item.match_confidence}%) awaiting manual review"
    elif _schedule_retry(item, now, f"No match ({item.match_confidence}%)"):
        item.match_status = MatchStatus.UNMATCHED
        item.processing_notes = f"Unmatched after {item.retry_count} attempts"

    return item.match_status
