"""
FastAPI dependencies for admin auth and service wiring.
"""
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from redis.asyncio import Redis

from billsync.core.config import settings
from billsync.core.redis import get_redis
from billsync.services.subscription_query_service import SubscriptionQueryService
from billsync.services.webhook_event_service import WebhookEventService
from billsync.services.webhook_processor import WebhookProcessor


async def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    """
    Dependency guarding the admin ops surface.

    Raises:
        HTTPException 503: ADMIN_API_TOKEN nao configurado.
        HTTPException 401: token ausente ou incorreto.
    """
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API desabilitada: ADMIN_API_TOKEN nao configurado.",
        )
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token de admin invalido.",
        )


async def get_webhook_processor(redis: Redis = Depends(get_redis)) -> WebhookProcessor:
    return WebhookProcessor.from_settings(redis)


async def get_webhook_event_service() -> WebhookEventService:
    return WebhookEventService.from_settings()


async def get_subscription_query_service() -> SubscriptionQueryService:
    return SubscriptionQueryService()
