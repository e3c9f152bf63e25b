"""
Webhook ingress rate limiting on Redis sorted sets (sliding 60s window).

Two buckets per delivery:
- source IP across all integrations (a misbehaving proxy or scanner)
- integration, sized per provider (webhook_config.rate_limit_per_minute)
  since M-PESA bursts at month start are far above a small bank's volume

Fails open: provider callbacks are never bounced because Redis is down.
"""
import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
IP_LIMIT_PER_MINUTE = 600


async def check_rate_limit(
    key: str,
    limit: int,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Record one hit on key and check it against limit.
    Returns (allowed, retry_after_seconds). retry_after is the time until the
    oldest hit in the window expires.
    """
    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()

        bucket = f"ipngate:ratelimit:{key}"
        now = time.time()

        pipe = redis.pipeline()
        pipe.zremrangebyscore(bucket, 0, now - window)
        pipe.zadd(bucket, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.zcard(bucket)
        pipe.zrange(bucket, 0, 0, withscores=True)
        pipe.expire(bucket, window + 1)
        _, _, hits, oldest, _ = await pipe.execute()
    except Exception as e:
        logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
        return True, None

    if hits <= limit:
        return True, None

    oldest_score = oldest[0][1] if oldest else now
    retry_after = max(1, int(oldest_score + window - now) + 1)
    logger.warning("Rate limit exceeded: key=%s hits=%d limit=%d", key, hits, limit)
    return False, min(retry_after, window)


async def check_source_rate_limit(source_ip: str) -> tuple[bool, Optional[int]]:
    return await check_rate_limit(f"ip:{source_ip}", IP_LIMIT_PER_MINUTE)


async def check_integration_rate_limit(integration) -> tuple[bool, Optional[int]]:
    """Provider bucket, sized by the integration or WEBHOOK_RATE_LIMIT_PER_MINUTE."""
    from ipngate.config import get_settings
    limit = integration.rate_limit_per_minute or get_settings().webhook_rate_limit_per_minute
    return await check_rate_limit(f"ipn:{integration.bank_code}", limit)
