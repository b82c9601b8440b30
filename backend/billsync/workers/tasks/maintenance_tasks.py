"""
Tarefas periodicas de manutencao (Celery Beat).

- cleanup_webhook_events: remove eventos completed/ignored alem da retencao
- webhook_health_check: loga alertas de taxa de falha, backlog e retries esgotados
"""
from __future__ import annotations

import asyncio
import logging

from billsync.core.config import settings
from billsync.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_cleanup(days: int) -> dict:
    from billsync.core.database import AsyncSessionLocal, engine
    from billsync.services.webhook_event_service import WebhookEventService

    try:
        async with AsyncSessionLocal() as db:
            deleted = await WebhookEventService.from_settings().cleanup_older_than(db, days)
            await db.commit()
        return {"deleted": deleted, "older_than_days": days}
    finally:
        await engine.dispose()


async def _run_health() -> dict:
    from billsync.core.database import AsyncSessionLocal, engine
    from billsync.services.webhook_event_service import WebhookEventService

    try:
        async with AsyncSessionLocal() as db:
            return await WebhookEventService.from_settings().get_health(db)
    finally:
        await engine.dispose()


@celery_app.task(name="billsync.workers.tasks.maintenance_tasks.cleanup_webhook_events")
def cleanup_webhook_events() -> dict:
    """
    Remove linhas do log de webhooks mais antigas que
    WEBHOOK_LOG_RETENTION_DAYS. ``failed``/``pending`` sao mantidas.
    """
    result = asyncio.run(_run_cleanup(settings.WEBHOOK_LOG_RETENTION_DAYS))
    logger.info("cleanup_webhook_events: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.maintenance_tasks.webhook_health_check")
def webhook_health_check() -> dict:
    """
    Verifica saude do pipeline de webhooks.

    Loga warnings/errors conforme os alertas; nao muta estado.
    """
    health = asyncio.run(_run_health())
    for alert in health["alerts"]:
        if alert["level"] == "critical":
            logger.error("webhook_health: %s", alert["message"])
        else:
            logger.warning("webhook_health: %s", alert["message"])
    result = {
        "status": health["status"],
        "alerts": len(health["alerts"]),
        "awaiting_retry": health["awaiting_retry"],
        "stuck_pending": health["stuck_pending"],
        "stuck_processing": health["stuck_processing"],
    }
    logger.info("webhook_health_check: %s", result)
    return result
