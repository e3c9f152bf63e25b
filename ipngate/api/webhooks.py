"""
IPN webhook receiver - one endpoint per bank / mobile-money integration.

Security layers (in order):
1. Rate limiting per source IP
2. Integration lookup (unknown or inactive -> 404), then its own rate limit
3. IP allowlist (per-integration, optional)
4. Signature validation (per-integration HMAC, optional)
5. Raw payload persisted verbatim with status=received
6. Pipeline scheduled after the response is sent

The provider gets its acknowledgement as soon as the row is committed, so a
slow pipeline or reconciliation step can never cause provider timeouts.
"""
import json
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.database import get_db
from ipngate.errors import TransportError
from ipngate.models.bank_integration import BankIntegration
from ipngate.models.integration_health_log import IntegrationHealthLog
from ipngate.models.ipn_event import IPNEvent
from ipngate.providers.base import UNPARSED_BODY_KEY
from ipngate.providers.mpesa import MpesaNormalizer
from ipngate.services.event_stream import publish_ipn_event
from ipngate.services.pipeline import process_event_in_background
from ipngate.utils.alerting import AlertType, send_alert
from ipngate.utils.logging import get_correlation_id
from ipngate.utils.rate_limiter import check_integration_rate_limit, check_source_rate_limit
from ipngate.utils.webhook_signatures import (
    is_ip_allowed,
    resolve_source_ip,
    validate_integration_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/ipn", tags=["ipn-webhooks"])

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _jsonb_safe(value) -> bool:
    """PostgreSQL JSONB rejects NUL characters and non-finite numbers."""
    if isinstance(value, str):
        return "\x00" not in value
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_jsonb_safe(k) and _jsonb_safe(v) for k, v in value.items())
    if isinstance(value, list):
        return all(_jsonb_safe(v) for v in value)
    return True


def _unparsed(text: str) -> dict:
    return {UNPARSED_BODY_KEY: text.replace("\x00", "\ufffd")}


def capture_raw_payload(body: bytes, content_type: str) -> dict:
    """
    Raw payload as stored on the event: JSON objects as-is, form bodies as a
    dict, anything else wrapped so that the delivery still gets an audit row.
    Bodies JSONB cannot hold (NUL, NaN, Infinity) are wrapped too, otherwise
    the insert fails and the provider retries the same body forever.
    """
    text = body.decode("utf-8", errors="replace")

    if "application/x-www-form-urlencoded" in (content_type or ""):
        pairs = parse_qsl(text, keep_blank_values=True)
        if pairs:
            form = dict(pairs)
            return form if _jsonb_safe(form) else _unparsed(text)

    try:
        parsed = json.loads(text)
    except ValueError:
        return _unparsed(text)
    if isinstance(parsed, dict) and _jsonb_safe(parsed):
        return parsed
    return _unparsed(text)


def _record_callback(
    db: AsyncSession,
    integration: BankIntegration,
    status: str,
    started: float,
    error_message: Optional[str] = None,
) -> None:
    """Add a callback health row and refresh the integration's health fields."""
    now = datetime.now(timezone.utc)
    db.add(IntegrationHealthLog(
        integration_id=integration.id,
        check_type="callback",
        status=status,
        error_message=error_message,
        response_time_ms=int((time.monotonic() - started) * 1000),
        checked_at=now,
    ))
    integration.last_health_check = now
    integration.health_status = "healthy" if status == "success" else "degraded"


async def _enforce_rate_limit(check) -> None:
    allowed, retry_after = await check
    if not allowed:
        raise TransportError(429, "Rate limit exceeded", headers={"Retry-After": str(retry_after or 60)})


async def _resolve_integration(db: AsyncSession, bank_code: str) -> BankIntegration:
    result = await db.execute(
        select(BankIntegration).where(
            BankIntegration.bank_code == bank_code.lower(),
            BankIntegration.is_active.is_(True),
        )
    )
    integration = result.scalar_one_or_none()
    if integration is None:
        logger.warning("IPN for unknown or inactive integration: %s", bank_code)
        raise TransportError(404, "Unknown integration")
    return integration


async def _authenticate(
    db: AsyncSession,
    integration: BankIntegration,
    request: Request,
    body: bytes,
    source_ip: str,
    started: float,
) -> None:
    """Allowlist then signature. Rejections are recorded in the health log before raising."""
    if not is_ip_allowed(source_ip, integration.ip_whitelist):
        logger.warning(
            "IPN rejected: ip %s not allowlisted for %s", source_ip, integration.bank_code,
            extra={"bank_code": integration.bank_code, "source_ip": source_ip},
        )
        _record_callback(db, integration, "failure", started, f"IP {source_ip} not allowlisted")
        await db.commit()
        await send_alert(
            AlertType.IP_NOT_WHITELISTED,
            f"IPN from {source_ip} rejected for {integration.bank_code}",
            severity="warning",
        )
        raise TransportError(403, "Source IP not allowed")

    if not validate_integration_signature(integration, request, body):
        logger.warning(
            "IPN rejected: invalid signature for %s from %s", integration.bank_code, source_ip,
            extra={"bank_code": integration.bank_code, "source_ip": source_ip},
        )
        _record_callback(db, integration, "failure", started, "Invalid webhook signature")
        await db.commit()
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Invalid IPN signature for {integration.bank_code} from {source_ip}",
            severity="warning",
        )
        raise TransportError(401, "Invalid webhook signature")


@router.post("/{bank_code}")
async def receive_ipn(
    bank_code: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """
    Inbound payment notification.
    Stores the raw payload and acknowledges immediately; normalization,
    validation, dedup and dispatch run after the response.
    """
    started = time.monotonic()
    source_ip = resolve_source_ip(request)

    try:
        await _enforce_rate_limit(check_source_rate_limit(source_ip))
        integration = await _resolve_integration(db, bank_code)
        await _enforce_rate_limit(check_integration_rate_limit(integration))
        body = await request.body()
        await _authenticate(db, integration, request, body, source_ip, started)
    except TransportError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail, headers=e.headers)

    raw_payload = capture_raw_payload(body, request.headers.get("content-type", ""))
    event_id = uuid.uuid4()
    integration_id = integration.id

    try:
        event = IPNEvent(
            id=event_id,
            integration_id=integration_id,
            raw_payload=raw_payload,
            source_ip=source_ip,
            correlation_id=get_correlation_id(),
        )
        db.add(event)
        await db.flush()
        _record_callback(db, integration, "success", started)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Failed to persist IPN for %s: %s", bank_code, str(e),
            exc_info=True, extra={"bank_code": bank_code, "integration_id": str(integration_id)},
        )
        await send_alert(
            AlertType.IPN_PERSISTENCE_FAILED,
            f"IPN for {bank_code} could not be stored - provider retry is the recovery path",
            severity="critical",
            extra={"source_ip": source_ip},
        )
        raise HTTPException(status_code=503, detail="Notification could not be stored, retry later")

    logger.info(
        "IPN %s received from %s", str(event_id)[:8], bank_code,
        extra={"event_id": str(event_id), "bank_code": bank_code, "status": "received"},
    )
    await publish_ipn_event(event)
    background_tasks.add_task(process_event_in_background, event_id)

    if integration.bank_code == MpesaNormalizer.bank_code:
        return MPESA_ACK
    return {"success": True, "event_id": str(event_id), "status": "received"}
