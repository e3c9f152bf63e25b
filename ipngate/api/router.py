"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from ipngate.api.health import router as health_router
from ipngate.api.monitor import router as monitor_router
from ipngate.api.reconciliation import router as reconciliation_router
from ipngate.api.webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(health_router)
# Monitor and reconciliation before the catch-all /api/v1/ipn/{bank_code}
api_router.include_router(monitor_router)
api_router.include_router(reconciliation_router)
api_router.include_router(webhooks_router)
