"""
IPN monitoring API - read-only operational view of the event store.

- GET /api/v1/ipn/events         - filter by status / integration, search, most recent first
- GET /api/v1/ipn/events/stream  - Server-Sent Events of new and updated events
- GET /api/v1/ipn/events/{id}    - raw + normalized payload and validation errors
- GET /api/v1/ipn/stats          - today's counts and queue depth
- GET /api/v1/ipn/integrations   - integrations for the bank filter
"""
import asyncio
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.api.auth import get_current_operator
from ipngate.config import get_settings
from ipngate.database import get_db
from ipngate.models.bank_integration import BankIntegration
from ipngate.schemas.api_responses import IPNEventListResponse, IPNStatsResponse
from ipngate.services.event_store import (
    clamp_limit,
    dashboard_stats,
    event_detail,
    get_event,
    list_events,
)
from ipngate.services.event_stream import EventFeed, event_summary
from ipngate.services.state_machine import ALL_STATUSES

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/ipn", tags=["ipn-monitor"])

KEEPALIVE_SECONDS = 15.0


def _sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@router.get("/events", response_model=IPNEventListResponse)
async def list_ipn_events(
    status: Optional[str] = Query(None),
    integration_id: Optional[uuid.UUID] = Query(None),
    q: Optional[str] = Query(None, max_length=100),
    limit: int = Query(100),
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """Event list for the monitor table. Page size is capped server-side."""
    if status and status not in ALL_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    max_limit = get_settings().events_page_size_max
    events = await list_events(
        db,
        status=status,
        integration_id=integration_id,
        search=q,
        limit=limit,
        max_limit=max_limit,
    )
    return {
        "events": [event_summary(e) for e in events],
        "count": len(events),
        "limit": clamp_limit(limit, max_limit),
    }


@router.get("/events/stream")
async def stream_ipn_events(
    request: Request,
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """
    Realtime feed. Sends a snapshot of the latest events, then one SSE message
    per published state change. The subscription is dropped when the client
    goes away.
    """
    settings = get_settings()
    recent = await list_events(db, limit=settings.realtime_buffer_size)
    await db.close()

    feed = EventFeed(buffer_size=settings.realtime_buffer_size)
    feed.seed([event_summary(e) for e in reversed(recent)])
    await feed.subscribe()

    async def event_source():
        try:
            yield _sse("snapshot", feed.recent)
            while True:
                if await request.is_disconnected():
                    break
                item = await feed.next_event(timeout=KEEPALIVE_SECONDS)
                if item is None:
                    yield ": keepalive\n\n"
                    continue
                yield _sse("ipn_event", item)
        except asyncio.CancelledError:
            logger.debug("Realtime stream cancelled for %s", operator["sub"])
            raise
        finally:
            await feed.close()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/events/{event_id}")
async def get_ipn_event(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    event = await get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="IPN event not found")
    return event_detail(event)


@router.get("/stats", response_model=IPNStatsResponse)
async def get_ipn_stats(
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    return await dashboard_stats(db)


@router.get("/integrations")
async def list_integrations(
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    result = await db.execute(select(BankIntegration).order_by(BankIntegration.bank_name))
    return {
        "integrations": [
            {
                "id": str(i.id),
                "bank_code": i.bank_code,
                "bank_name": i.bank_name,
                "provider_type": i.provider_type,
                "is_active": i.is_active,
                "health_status": i.health_status,
                "last_health_check": i.last_health_check.isoformat() if i.last_health_check else None,
            }
            for i in result.scalars().all()
        ]
    }
