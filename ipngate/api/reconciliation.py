"""
Reconciliation outcome callback - the only write path into queued events
from outside the pipeline. Used by the reconciliation service and by
operators resolving manual-review items.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ipngate.api.auth import require_roles
from ipngate.database import get_db
from ipngate.errors import InvalidTransition
from ipngate.schemas.api_responses import OutcomeRequest, OutcomeResponse
from ipngate.services.reconciliation import record_outcome

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/ipn", tags=["ipn-reconciliation"])


@router.post("/events/{event_id}/outcome", response_model=OutcomeResponse)
async def post_outcome(
    event_id: uuid.UUID,
    payload: OutcomeRequest,
    db: AsyncSession = Depends(get_db),
    principal: dict = Depends(require_roles("reconciler", "operator")),
):
    """Mark a queued event processed or failed. Repeating a callback is a no-op."""
    try:
        event = await record_outcome(
            db, event_id, payload.outcome, payload.reason, actor=principal["role"],
        )
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    if event is None:
        raise HTTPException(status_code=404, detail="IPN event not found")
    return {"event_id": str(event.id), "status": event.status}
