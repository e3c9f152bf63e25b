"""
Reconciliation queue processor - matches queued IPN events against invoices.
Runs every 60 seconds. Picks pending queue items that are due, posts each to
the reconciliation service and applies the result:
- high confidence  -> matched, event processed
- partial          -> manual review, event stays queued
- no match         -> retried every few minutes, then manual review
Disabled while RECONCILIATION_URL is empty.
"""
import asyncio
import logging
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
BATCH_SIZE = 20


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            "ipngate:worker_health:queue_processor",
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Queue processor heartbeat failed: %s", str(e))


async def run_queue_processor():
    """Main queue processor loop. Runs continuously."""
    from ipngate.config import get_settings

    if not get_settings().reconciliation_url:
        logger.warning("RECONCILIATION_URL not set - queue items will wait for outcome callbacks")
    logger.info("Queue processor started")

    while True:
        try:
            if get_settings().reconciliation_url:
                handled = await process_due_items()
                if handled > 0:
                    logger.info("Queue processor handled %d queue items", handled)
        except Exception as e:
            logger.error("Queue processor error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def process_due_items(db=None, client: httpx.AsyncClient = None) -> int:
    """Reconcile one batch of due queue items. Returns count handled."""
    from ipngate.config import get_settings
    from ipngate.database import async_session_factory
    from ipngate.models.ipn_event import IPNEvent
    from ipngate.services.event_stream import publish_ipn_event
    from ipngate.services.reconciliation import due_queue_items, reconcile_item
    from ipngate.services.state_machine import EventStatus

    settings = get_settings()

    async def _process(session, http: httpx.AsyncClient) -> int:
        now = datetime.now(timezone.utc)
        items = await due_queue_items(session, now, BATCH_SIZE)

        changed_events = []
        for item in items:
            event = await session.get(IPNEvent, item.ipn_event_id)
            if event is None or event.status != EventStatus.QUEUED:
                continue
            match_status = await reconcile_item(session, item, event, http, now=now)
            logger.info(
                "Queue item %s -> %s (confidence %d)",
                str(item.id)[:8], match_status, item.match_confidence,
                extra={"event_id": str(event.id)},
            )
            if event.status != EventStatus.QUEUED:
                changed_events.append(event)

        await session.commit()
        for event in changed_events:
            await publish_ipn_event(event)
        return len(items)

    async def _with_client(session) -> int:
        if client is not None:
            return await _process(session, client)
        async with httpx.AsyncClient(timeout=settings.reconciliation_timeout_seconds) as http:
            return await _process(session, http)

    if db is not None:
        return await _with_client(db)
    async with async_session_factory() as session:
        return await _with_client(session)
