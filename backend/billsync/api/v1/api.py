"""
API v1 Router
Aggregates all API endpoints.
"""
from fastapi import APIRouter

from billsync.api.v1.endpoints import subscriptions, webhook_events, webhooks

api_router = APIRouter()


# Health check for API
@api_router.get("/ping", tags=["Health"])
async def ping():
    """Simple ping endpoint to verify API is responding"""
    return {"message": "pong", "api_version": "v1"}


# Include endpoint routers
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(
    webhook_events.router, prefix="/admin/webhook-events", tags=["Admin Webhook Events"]
)
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
