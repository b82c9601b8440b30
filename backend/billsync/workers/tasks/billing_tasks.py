"""
Tarefas periodicas de billing (Celery Beat).

- send_expiry_warnings / expire_to_free / recover_orphan_subscriptions /
  cancel_failed_payments: sweeps de reconciliacao de assinaturas
- send_weekly_digest / send_free_plan_reminders: notificacoes somente leitura
- retry_failed_webhooks: reprocessa eventos pendentes com backoff vencido

Cada task roda em ``asyncio.run`` proprio, com sessao e client Redis novos.
"""
from __future__ import annotations

import asyncio
import logging

from billsync.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_sweep(sweep: str) -> dict:
    """Executa uma sweep do ReconciliationService em contexto async."""
    from billsync.core.database import AsyncSessionLocal, engine
    from billsync.core.redis import create_redis_client
    from billsync.services.reconciliation_service import ReconciliationService

    redis = create_redis_client()
    try:
        service = ReconciliationService.from_settings(redis)
        async with AsyncSessionLocal() as db:
            report = await getattr(service, sweep)(db)
        return report.as_dict()
    finally:
        await redis.aclose()
        # Pool do asyncpg fica preso ao loop que acabou
        await engine.dispose()


async def _run_webhook_retries() -> dict:
    from billsync.core.database import AsyncSessionLocal, engine
    from billsync.core.redis import create_redis_client
    from billsync.services.webhook_processor import WebhookProcessor

    redis = create_redis_client()
    try:
        processor = WebhookProcessor.from_settings(redis)
        async with AsyncSessionLocal() as db:
            return await processor.retry_due_events(db)
    finally:
        await redis.aclose()
        await engine.dispose()


@celery_app.task(name="billsync.workers.tasks.billing_tasks.send_expiry_warnings")
def send_expiry_warnings() -> dict:
    """Avisa assinaturas pagas que vencem nos proximos EXPIRY_WARNING_DAYS."""
    result = asyncio.run(_run_sweep("send_expiry_warnings"))
    logger.info("send_expiry_warnings: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.expire_to_free")
def expire_to_free() -> dict:
    """Expira assinaturas pagas vencidas e cria o fallback free."""
    result = asyncio.run(_run_sweep("expire_to_free"))
    logger.info("expire_to_free: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.recover_orphan_subscriptions")
def recover_orphan_subscriptions() -> dict:
    result = asyncio.run(_run_sweep("recover_orphans"))
    logger.info("recover_orphan_subscriptions: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.cancel_failed_payments")
def cancel_failed_payments() -> dict:
    """Cancela assinaturas em past_due ha mais de PAST_DUE_GRACE_DAYS."""
    result = asyncio.run(_run_sweep("cancel_failed_payments"))
    logger.info("cancel_failed_payments: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.send_weekly_digest")
def send_weekly_digest() -> dict:
    result = asyncio.run(_run_sweep("send_weekly_digest"))
    logger.info("send_weekly_digest: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.send_free_plan_reminders")
def send_free_plan_reminders() -> dict:
    result = asyncio.run(_run_sweep("send_free_plan_reminders"))
    logger.info("send_free_plan_reminders: %s", result)
    return result


@celery_app.task(name="billsync.workers.tasks.billing_tasks.retry_failed_webhooks")
def retry_failed_webhooks() -> dict:
    """
    Reprocessa eventos ``pending`` com ``retry_count > 0`` e
    ``next_retry_at`` vencido.
    """
    result = asyncio.run(_run_webhook_retries())
    logger.info("retry_failed_webhooks: %s", result)
    return result
