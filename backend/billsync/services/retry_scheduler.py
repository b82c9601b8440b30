"""
Retry/backoff scheduling for failed webhook processing.

Cada falha incrementa ``retry_count``; o proximo retry fica em
``now + base^retry_count`` minutos (5, 25, 125 com base 5). Ao atingir
``max_retries`` o evento vira ``failed`` permanente e aguarda retry manual.
Linhas presas em ``processing`` (worker morto) entram no mesmo orcamento.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.core.exceptions import RetryExhausted
from billsync.models.webhook_event import WebhookEvent, WebhookStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    retry_count: int
    next_retry_at: Optional[datetime]
    exhausted: Optional[RetryExhausted] = None


def backoff_delay(retry_count: int, base_minutes: int = 5) -> timedelta:
    """Delay before attempt number ``retry_count`` (``base^n`` minutes)."""
    return timedelta(minutes=base_minutes ** retry_count)


class RetryScheduler:
    """Applies the bounded retry budget to WebhookEvent rows."""

    def __init__(self, *, base_minutes: int = 5, clock: Clock = utcnow) -> None:
        self._base_minutes = base_minutes
        self._clock = clock

    @classmethod
    def from_settings(cls, clock: Clock = utcnow) -> RetryScheduler:
        return cls(base_minutes=settings.WEBHOOK_BACKOFF_BASE_MINUTES, clock=clock)

    def schedule_retry(self, event: WebhookEvent) -> RetryDecision:
        """
        Consume one retry from the budget.

        Retorna ``exhausted`` preenchido quando o evento passa a ``failed``
        permanente (condicao alertavel).
        """
        event.retry_count = (event.retry_count or 0) + 1
        if event.retry_count >= event.max_retries:
            event.status = WebhookStatus.FAILED.value
            event.next_retry_at = None
            exhausted = RetryExhausted(event.provider_event_id, event.retry_count)
            logger.error(
                "webhook_retry_exhausted: log_id=%s event_id=%s attempts=%s",
                event.id, event.provider_event_id, event.retry_count,
            )
            return RetryDecision(event.retry_count, None, exhausted)

        event.status = WebhookStatus.PENDING.value
        event.next_retry_at = self._clock() + backoff_delay(event.retry_count, self._base_minutes)
        logger.warning(
            "webhook_retry_scheduled: log_id=%s event_id=%s attempt=%s next_retry_at=%s",
            event.id, event.provider_event_id, event.retry_count, event.next_retry_at,
        )
        return RetryDecision(event.retry_count, event.next_retry_at)

    def exhaust(self, event: WebhookEvent) -> RetryExhausted:
        """Permanent failure: no automatic retries left."""
        event.retry_count = max(event.retry_count or 0, event.max_retries)
        event.status = WebhookStatus.FAILED.value
        event.next_retry_at = None
        return RetryExhausted(event.provider_event_id, event.retry_count)

    async def find_due(
        self,
        db: AsyncSession,
        *,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        """Pending rows whose scheduled retry time has passed."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookStatus.PENDING.value,
                WebhookEvent.retry_count > 0,
                WebhookEvent.next_retry_at.isnot(None),
                WebhookEvent.next_retry_at <= self._clock(),
                WebhookEvent.signature_verified.is_(True),
            )
            .order_by(WebhookEvent.next_retry_at.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def find_stale_processing(
        self,
        db: AsyncSession,
        *,
        stale_after: timedelta,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        """
        Rows left in ``processing`` longer than ``stale_after``.

        O handler roda sob timeout; uma linha ainda em processing depois disso
        pertence a um worker que morreu antes do settle.
        """
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookStatus.PROCESSING.value,
                WebhookEvent.processing_started_at < self._clock() - stale_after,
            )
            .order_by(WebhookEvent.processing_started_at.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
