"""
Notification deduplication and the shared Redis client.

Providers deliver at-least-once, so the same payment can arrive several times.
A fingerprint of (integration, reference, amount, currency) identifies the
underlying payment. Claims live in the ipn_fingerprints table: the unique
index makes check-and-mark a single atomic statement, so two concurrent
deliveries of one payment cannot both pass. Redis is not used for the claim
itself - a Redis outage must never let a payment through twice.
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.database import insert_if_absent
from ipngate.models.fingerprint import IPNFingerprint

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from ipngate.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def fingerprint_reference(bank_reference: Optional[str], external_reference: Optional[str]) -> Optional[str]:
    """
    Reference used for the fingerprint.
    The provider transaction id (bank_reference) is unique per payment; the
    payer-entered bill reference repeats across payments, so it is only the fallback.
    """
    return (bank_reference or "").strip() or (external_reference or "").strip() or None


def compute_fingerprint(
    integration_id,
    reference: Optional[str],
    amount: Optional[Decimal],
    currency: Optional[str],
) -> str:
    """SHA-256 over integration + reference + amount + currency (64 hex chars)."""
    amount_str = format(Decimal(amount), "f") if amount is not None else ""
    raw = f"{integration_id}|{(reference or '').upper()}|{amount_str}|{(currency or '').upper()}"
    return hashlib.sha256(raw.encode()).hexdigest()


async def claim_fingerprint(
    db: AsyncSession,
    fingerprint: str,
    event_id: uuid.UUID,
    window_seconds: int,
) -> tuple[bool, Optional[uuid.UUID]]:
    """
    Atomically claim a fingerprint for event_id.

    Returns (True, None) if this event is first-seen, or (False, original_event_id)
    if a live claim already exists. A claim older than window_seconds is taken
    over by a conditional UPDATE (also a single statement). window_seconds <= 0
    means claims never expire.
    """
    now = datetime.now(timezone.utc)

    inserted = await insert_if_absent(
        db,
        IPNFingerprint,
        {"id": uuid.uuid4(), "fingerprint": fingerprint, "event_id": event_id, "claimed_at": now},
        conflict_columns=["fingerprint"],
    )
    if inserted is not None:
        return True, None

    if window_seconds > 0:
        cutoff = now - timedelta(seconds=window_seconds)
        result = await db.execute(
            update(IPNFingerprint)
            .where(
                IPNFingerprint.fingerprint == fingerprint,
                IPNFingerprint.claimed_at < cutoff,
            )
            .values(event_id=event_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Fingerprint %s re-claimed after dedup window", fingerprint[:12])
            return True, None

    result = await db.execute(
        select(IPNFingerprint.event_id).where(IPNFingerprint.fingerprint == fingerprint)
    )
    original_event_id = result.scalar_one_or_none()
    logger.info(
        "Duplicate notification detected: fingerprint=%s original=%s",
        fingerprint[:12], str(original_event_id)[:8],
    )
    return False, original_event_id


async def ensure_first_seen(db: AsyncSession, event, window_seconds: int) -> str:
    """
    Fingerprint a validated event and claim it.
    Returns the fingerprint; raises DuplicateNotification when another event
    already holds a live claim on it.
    """
    from ipngate.errors import DuplicateNotification

    reference = fingerprint_reference(event.bank_reference, event.external_reference)
    fingerprint = compute_fingerprint(event.integration_id, reference, event.amount, event.currency)
    event.fingerprint = fingerprint

    first_seen, original_event_id = await claim_fingerprint(db, fingerprint, event.id, window_seconds)
    if not first_seen:
        raise DuplicateNotification(fingerprint, original_event_id)
    return fingerprint
