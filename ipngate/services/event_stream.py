"""
Realtime IPN event feed over Redis pub/sub.

Every state change is published as a small JSON summary on one channel.
Dashboard clients consume it through an EventFeed: an explicit subscriber
holding a bounded buffer of the most recent events, unsubscribed on close.
Publishing is best-effort - the pipeline never fails because Redis is down.
"""
import json
import logging
from collections import deque
from typing import Optional

logger = logging.getLogger(__name__)

CHANNEL = "ipngate:ipn_events"


def event_summary(event) -> dict:
    """Row shape used by the event list and the realtime stream."""
    return {
        "id": str(event.id),
        "integration_id": str(event.integration_id),
        "status": event.status,
        "event_type": event.event_type,
        "amount": float(event.amount) if event.amount is not None else None,
        "currency": event.currency,
        "sender_name": event.sender_name,
        "sender_phone": event.sender_phone,
        "external_reference": event.external_reference,
        "bank_reference": event.bank_reference,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "updated_at": event.updated_at.isoformat() if event.updated_at else None,
    }


async def publish_ipn_event(event) -> None:
    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        await redis.publish(CHANNEL, json.dumps(event_summary(event), default=str))
    except Exception as e:
        logger.debug("Realtime publish failed for %s: %s", str(event.id)[:8], str(e))


class EventFeed:
    """One dashboard subscription. Use as an async context manager or call subscribe()/close()."""

    def __init__(self, buffer_size: int = 10):
        self.buffer: deque[dict] = deque(maxlen=buffer_size)
        self._pubsub = None
        self.closed = False

    async def subscribe(self) -> "EventFeed":
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        self._pubsub = redis.pubsub()
        await self._pubsub.subscribe(CHANNEL)
        return self

    def seed(self, events: list[dict]) -> None:
        """Pre-fill the buffer (oldest first) from the event store on connect."""
        for item in events:
            self.buffer.append(item)

    @property
    def recent(self) -> list[dict]:
        """Buffered events, newest first."""
        return list(reversed(self.buffer))

    async def next_event(self, timeout: float = 15.0) -> Optional[dict]:
        """Wait up to timeout seconds for the next published event."""
        if self.closed or self._pubsub is None:
            return None
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        try:
            item = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed realtime message")
            return None
        self.buffer.append(item)
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(CHANNEL)
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug("Realtime unsubscribe error: %s", str(e))
            self._pubsub = None

    async def __aenter__(self) -> "EventFeed":
        return await self.subscribe()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
