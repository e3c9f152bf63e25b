"""
Dispatch retry worker - re-dispatches events left validated by a DispatchError.
Runs every 30 seconds, oldest first.
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
            "ipngate:worker_health:dispatch_retry",
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Dispatch retry heartbeat failed: %s", str(e))


async def run_dispatch_retry_worker():
    """Main dispatch retry loop. Runs continuously."""
    logger.info("Dispatch retry worker started")

    while True:
        try:
            dispatched = await retry_validated_events()
            if dispatched > 0:
                logger.info("Dispatch retry worker queued %d events", dispatched)
        except Exception as e:
            logger.error("Dispatch retry worker error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def retry_validated_events(db=None) -> int:
    """Dispatch validated events older than dispatch_retry_seconds. Returns count queued."""
    from ipngate.config import get_settings
    from ipngate.database import async_session_factory
    from ipngate.errors import DispatchError
    from ipngate.models.ipn_event import IPNEvent
    from ipngate.services.dispatcher import dispatch
    from ipngate.services.state_machine import EventStatus
    from ipngate.utils.alerting import AlertType, send_alert

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=get_settings().dispatch_retry_seconds)

    async def _retry(session) -> int:
        result = await session.execute(
            select(IPNEvent.id)
            .where(
                IPNEvent.status == EventStatus.VALIDATED,
                IPNEvent.updated_at <= cutoff,
            )
            .order_by(IPNEvent.updated_at)
            .limit(BATCH_SIZE)
        )
        event_ids = list(result.scalars().all())

        queued = 0
        for event_id in event_ids:
            locked = await session.execute(
                select(IPNEvent)
                .where(IPNEvent.id == event_id, IPNEvent.status == EventStatus.VALIDATED)
                .with_for_update(skip_locked=True)
            )
            event = locked.scalar_one_or_none()
            if event is None:
                continue
            try:
                if await dispatch(session, event):
                    queued += 1
            except DispatchError as e:
                logger.warning("Dispatch retry failed for %s: %s", str(event_id)[:8], str(e))
                await send_alert(
                    AlertType.DISPATCH_FAILED,
                    f"Reconciliation queue still unavailable ({e})",
                    extra={"event_id": str(event_id)},
                )
                # Queue is down - stop this batch and try again next cycle
                break
        return queued

    if db is not None:
        return await _retry(db)
    async with async_session_factory() as session:
        return await _retry(session)
