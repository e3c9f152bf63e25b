"""
Pipeline sweeper - re-drives IPN events stuck in received.
The webhook schedules the pipeline as a background task; if the process dies
before it runs, the event would sit in received forever. Runs every 30 seconds.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30
BATCH_SIZE = 50


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            "ipngate:worker_health:pipeline_sweeper",
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Pipeline sweeper heartbeat failed: %s", str(e))


async def run_pipeline_sweeper():
    """Main sweeper loop. Runs continuously."""
    logger.info("Pipeline sweeper started")

    while True:
        try:
            swept = await sweep_stale_received()
            if swept > 0:
                logger.info("Pipeline sweeper re-drove %d received events", swept)
        except Exception as e:
            logger.error("Pipeline sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def sweep_stale_received(db=None) -> int:
    """Process received events older than stale_received_seconds. Returns count processed."""
    from ipngate.config import get_settings
    from ipngate.database import async_session_factory
    from ipngate.models.ipn_event import IPNEvent
    from ipngate.services.pipeline import process_event
    from ipngate.services.state_machine import EventStatus

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=get_settings().stale_received_seconds)

    async def _sweep(session) -> int:
        result = await session.execute(
            select(IPNEvent.id)
            .where(
                IPNEvent.status == EventStatus.RECEIVED,
                IPNEvent.created_at <= cutoff,
            )
            .order_by(IPNEvent.created_at)
            .limit(BATCH_SIZE)
        )
        event_ids = list(result.scalars().all())

        processed = 0
        for event_id in event_ids:
            try:
                await process_event(session, event_id)
                processed += 1
            except Exception as e:
                await session.rollback()
                logger.error(
                    "Sweeper failed on %s: %s", str(event_id)[:8], str(e),
                    exc_info=True, extra={"event_id": str(event_id)},
                )
        return processed

    if db is not None:
        return await _sweep(db)
    async with async_session_factory() as session:
        return await _sweep(session)
