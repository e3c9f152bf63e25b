"""
IPN processing pipeline - runs after the webhook has been acknowledged.

    received -> normalize -> validate -> deduplicate -> validated -> dispatch -> queued

Each event is processed sequentially under a row lock; many events run
concurrently. Every error after the raw payload is stored ends up as a
recorded status on the row: ParseError and ValidationError -> failed,
DuplicateNotification -> duplicate, DispatchError -> stays validated.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.config import get_settings
from ipngate.errors import DispatchError, DuplicateNotification, ValidationError
from ipngate.models.bank_integration import BankIntegration
from ipngate.models.ipn_event import IPNEvent
from ipngate.services.dispatcher import dispatch
from ipngate.services.event_stream import publish_ipn_event
from ipngate.services.normalizer import normalize_event
from ipngate.services.state_machine import EventStatus, transition
from ipngate.services.validator import validate_payment
from ipngate.utils.dedup import ensure_first_seen

logger = logging.getLogger(__name__)


async def process_event(db: AsyncSession, event_id: uuid.UUID) -> Optional[str]:
    """
    Run a received event through the pipeline. Returns the resulting status,
    or None if the event does not exist. Events past received are left alone,
    so calling this twice for the same event is safe.
    """
    result = await db.execute(
        select(IPNEvent).where(IPNEvent.id == event_id).with_for_update()
    )
    event = result.scalar_one_or_none()
    if event is None:
        logger.warning("IPN event %s not found for processing", str(event_id)[:8])
        return None
    if event.status != EventStatus.RECEIVED:
        logger.debug("IPN %s already past received (%s)", str(event_id)[:8], event.status)
        return event.status

    event.processing_started_at = datetime.now(timezone.utc)
    integration = await db.get(BankIntegration, event.integration_id)

    if integration is None or not integration.is_active:
        event.validation_errors = ["Unknown or inactive integration"]
        transition(event, EventStatus.FAILED)
    else:
        payment = normalize_event(event, integration)
        if payment is not None:
            try:
                validate_payment(payment, integration)
                transition(event, EventStatus.VALIDATED, normalized_payload=payment.to_payload())
                await db.flush()
                await ensure_first_seen(db, event, get_settings().dedup_window_seconds)
            except ValidationError as e:
                event.validation_errors = e.errors
                transition(event, EventStatus.FAILED)
            except DuplicateNotification as e:
                event.duplicate_of_id = e.original_event_id
                transition(event, EventStatus.DUPLICATE)

    status = event.status
    await db.commit()

    logger.info(
        "IPN %s %s", str(event_id)[:8], status,
        extra={"event_id": str(event_id), "status": status, "integration_id": str(event.integration_id)},
    )
    await publish_ipn_event(event)

    if status == EventStatus.VALIDATED:
        try:
            await dispatch(db, event)
        except DispatchError as e:
            logger.warning("IPN %s left validated: %s", str(event_id)[:8], str(e))
            return EventStatus.VALIDATED
        return EventStatus.QUEUED

    return status


async def process_event_in_background(event_id: uuid.UUID) -> None:
    """Entry point for FastAPI BackgroundTasks - owns its session."""
    from ipngate.database import async_session_factory

    try:
        async with async_session_factory() as db:
            await process_event(db, event_id)
    except Exception as e:
        # The event stays received; the pipeline sweeper re-drives it
        logger.error(
            "Background processing failed for %s: %s", str(event_id)[:8], str(e),
            exc_info=True, extra={"event_id": str(event_id)},
        )
