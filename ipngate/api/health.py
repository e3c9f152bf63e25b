"""
Health endpoints for load balancers, the Docker healthcheck and operators.

GET /health        process is up
GET /health/ready  database and Redis reachable
GET /health/deep   plus worker heartbeats and the pipeline backlog

Only the database is critical. Without Redis the gateway still persists and
acknowledges callbacks; it loses rate limiting, dedup fast-path and the feed.
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate import __version__
from ipngate.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

WORKER_NAMES = ("pipeline_sweeper", "dispatch_retry", "queue_processor")
BACKLOG_WARNING = 500
CRITICAL_CHECKS = ("database",)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": __version__}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": _now_iso(),
    }


@router.get("/health/deep")
async def deep_health_check(db: AsyncSession = Depends(get_db)):
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "workers": await _check_workers(),
        "backlog": await _check_backlog(db),
    }

    failing = [name for name, check in checks.items() if not check.get("healthy", False)]
    if not failing:
        status = "healthy"
    elif any(name in CRITICAL_CHECKS for name in failing):
        status = "unhealthy"
    else:
        status = "degraded"

    return {"status": status, "checks": checks, "timestamp": _now_iso(), "version": __version__}


async def _check_database(db: AsyncSession) -> dict:
    started = time.monotonic()
    try:
        (await db.execute(text("SELECT 1"))).scalar()
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}
    return {"healthy": True, "latency_ms": round((time.monotonic() - started) * 1000, 1)}


async def _check_redis() -> dict:
    started = time.monotonic()
    try:
        from ipngate.utils.dedup import get_redis
        await (await get_redis()).ping()
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}
    return {"healthy": True, "latency_ms": round((time.monotonic() - started) * 1000, 1)}


async def _check_workers() -> dict:
    """Each worker loop refreshes ipngate:worker_health:<name> with a 5 minute TTL."""
    try:
        from ipngate.utils.dedup import get_redis
        redis = await get_redis()
        beats = {name: await redis.get(f"ipngate:worker_health:{name}") for name in WORKER_NAMES}
    except Exception as e:
        logger.warning("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "error": "Unable to check worker heartbeats"}

    workers = {
        name: {"healthy": beat is not None, "last_heartbeat": beat}
        for name, beat in beats.items()
    }
    return {"healthy": all(beat is not None for beat in beats.values()), "workers": workers}


async def _check_backlog(db: AsyncSession) -> dict:
    """Events the sweeper (received) or dispatch retry (validated) still owe work on."""
    from ipngate.models.ipn_event import IPNEvent
    from ipngate.services.state_machine import EventStatus

    try:
        rows = await db.execute(
            select(IPNEvent.status, func.count(IPNEvent.id))
            .where(IPNEvent.status.in_([EventStatus.RECEIVED, EventStatus.VALIDATED]))
            .group_by(IPNEvent.status)
        )
        counts = dict(rows.all())
    except Exception as e:
        logger.error("Health: backlog check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}

    received = counts.get(EventStatus.RECEIVED, 0)
    validated = counts.get(EventStatus.VALIDATED, 0)
    return {
        "healthy": received + validated < BACKLOG_WARNING,
        "received": received,
        "validated": validated,
    }
