"""
Operator alerts for conditions that need a human: persistence failures,
bad signatures, a queue or reconciliation endpoint that stays down.

Every alert is logged. When ALERT_WEBHOOK_URL is set it is also posted to
that Discord/Slack hook. Each alert type has a cooldown held in Redis
(SET NX EX) so a provider outage produces one alert, not thousands; a
process-local dict stands in while Redis is unreachable.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

# Conditions that persist for a while once they start
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,
    "reconciliation_unavailable": 900,
}

_SEVERITY_LEVELS = {"critical": logging.CRITICAL, "warning": logging.WARNING}

_local_cooldowns: dict[str, float] = {}  # alert_type -> monotonic expiry


class AlertType:
    IPN_PERSISTENCE_FAILED = "ipn_persistence_failed"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    IP_NOT_WHITELISTED = "ip_not_whitelisted"
    DISPATCH_FAILED = "dispatch_failed"
    RECONCILIATION_UNAVAILABLE = "reconciliation_unavailable"
    RECONCILIATION_EXHAUSTED = "reconciliation_exhausted"
    WORKER_ERROR = "worker_error"


def cooldown_for(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


def format_alert_content(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    """Markdown body accepted by both Discord ("content") and Slack ("text")."""
    lines = [f"[{severity.upper()}] **{alert_type}**", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    lines.extend(f"`{key}: {val}`" for key, val in (extra or {}).items())
    return "\n".join(lines)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """
    Log the alert and forward it to the alert webhook.
    Silently dropped while the alert type is cooling down.
    """
    if not await _claim_slot(alert_type):
        return

    from ipngate.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    suffix = f" (correlation_id={cid})" if cid else ""
    logger.log(
        _SEVERITY_LEVELS.get(severity, logging.ERROR),
        "ALERT [%s]: %s%s", alert_type, message, suffix,
    )

    await _post_to_webhook(format_alert_content(alert_type, message, severity, cid, extra))


async def _claim_slot(alert_type: str) -> bool:
    """True if no alert of this type went out within its cooldown."""
    cooldown = cooldown_for(alert_type)

    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        claimed = await redis.set(f"ipngate:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown)
        return bool(claimed)
    except Exception as e:
        logger.debug("Alert cooldown falling back to process memory: %s", str(e))

    now = time.monotonic()
    if now < _local_cooldowns.get(alert_type, 0):
        return False
    _local_cooldowns[alert_type] = now + cooldown
    return True


async def _post_to_webhook(content: str) -> None:
    from ipngate.config import get_settings
    webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return

    import httpx

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content, "text": content})
    except Exception as e:
        logger.warning("Failed to send webhook alert: %s", str(e))
