"""
Webhook event log store — append-then-update log of every delivery attempt.

Toda entrega vira uma linha ``pending`` antes da verificacao de assinatura;
as transicoes seguintes (processing/completed/failed/ignored) gravam
timestamps e ``processing_time_ms``. Tambem expoe as consultas usadas pelo
painel admin (listagem, estatisticas, saude e limpeza por retencao).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.core.exceptions import WebhookEventNotFound
from billsync.models.webhook_event import PURGEABLE_STATUSES, WebhookEvent, WebhookStatus
from billsync.services.signature_verifier import VerifiedEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
MAX_ERROR_LENGTH = 2000

# Limiares do health check (taxa de falha em %, tempo medio em ms)
FAILURE_RATE_WARNING = 10.0
FAILURE_RATE_CRITICAL = 25.0
SLOW_PROCESSING_MS = 5000
STUCK_PENDING_MINUTES = 15


@dataclass
class RawWebhookRequest:
    """Inbound HTTP request exactly as received."""

    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def signature(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == SIGNATURE_HEADER:
                return value
        return ""


@dataclass
class WebhookEventFilters:
    """Admin list filters; todos opcionais."""

    event_type: Optional[str] = None
    status: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[UUID] = None
    signature_verified: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def _redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Mantem so o prefixo do header de assinatura."""
    redacted: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() == SIGNATURE_HEADER and value:
            redacted[key] = value[:20] + "..."
        else:
            redacted[key] = value
    return redacted


def _peek_event(body: bytes) -> tuple[Optional[str], Optional[str]]:
    """Best-effort id/type extraction from an unverified body."""
    try:
        parsed = json.loads(body)
    except ValueError:
        return None, None
    if not isinstance(parsed, dict):
        return None, None
    event_id = parsed.get("id")
    event_type = parsed.get("type")
    return (
        str(event_id) if event_id else None,
        str(event_type) if event_type else None,
    )


class WebhookEventService:
    """
    Persists webhook delivery attempts and their status transitions.

    Nao faz commit: o WebhookProcessor controla as fronteiras de transacao.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        clock: Clock = utcnow,
        environment: str = "development",
    ) -> None:
        self._max_retries = max_retries
        self._clock = clock
        self._environment = environment

    @classmethod
    def from_settings(cls, clock: Clock = utcnow) -> WebhookEventService:
        return cls(
            max_retries=settings.WEBHOOK_MAX_RETRIES,
            clock=clock,
            environment=settings.ENVIRONMENT,
        )

    # ------------------------------------------------------------------
    # Delivery log
    # ------------------------------------------------------------------

    async def log_attempt(self, db: AsyncSession, raw: RawWebhookRequest) -> WebhookEvent:
        """
        Write the initial ``pending`` row for a delivery attempt.

        Roda antes da verificacao; id/tipo extraidos aqui nao sao confiaveis.
        """
        now = self._clock()
        event_id, event_type = _peek_event(raw.body)
        event = WebhookEvent(
            provider_event_id=event_id,
            event_type=event_type or "unknown",
            status=WebhookStatus.PENDING.value,
            signature_verified=False,
            retry_count=0,
            max_retries=self._max_retries,
            method=raw.method,
            headers=_redact_headers(raw.headers),
            raw_payload=raw.body.decode("utf-8", errors="replace"),
            source_ip=raw.source_ip,
            user_agent=(raw.user_agent or "")[:500] or None,
            environment=self._environment,
            created_at=now,
            updated_at=now,
        )
        db.add(event)
        await db.flush()
        logger.info(
            "webhook_received: log_id=%s event_id=%s type=%s ip=%s",
            event.id, event_id, event.event_type, raw.source_ip,
        )
        return event

    async def attach_parsed_event(
        self,
        db: AsyncSession,
        event: WebhookEvent,
        verified: VerifiedEvent,
        *,
        signature_verified: bool,
    ) -> WebhookEvent:
        """Record verified id/type/payload and opportunistic associations."""
        data = verified.data_object
        event.provider_event_id = verified.id
        event.event_type = verified.type
        event.signature_verified = signature_verified
        event.parsed_data = verified.payload
        event.associated_customer_id = data.get("customer") or event.associated_customer_id

        if verified.type.startswith("customer.subscription."):
            event.provider_subscription_id = data.get("id")
        elif data.get("subscription"):
            event.provider_subscription_id = data.get("subscription")

        event.updated_at = self._clock()
        await db.flush()
        return event

    def mark_processing(self, event: WebhookEvent) -> None:
        now = self._clock()
        event.status = WebhookStatus.PROCESSING.value
        event.processing_started_at = now
        event.processing_completed_at = None
        event.updated_at = now

    def mark_completed(self, event: WebhookEvent, *, response_status: int = 200) -> None:
        self._finish(event, WebhookStatus.COMPLETED, response_status=response_status)
        event.error_message = None
        event.next_retry_at = None

    def mark_failed(
        self,
        event: WebhookEvent,
        error_message: str,
        *,
        response_status: int = 500,
    ) -> None:
        self._finish(
            event,
            WebhookStatus.FAILED,
            response_status=response_status,
            error_message=error_message,
        )

    def mark_ignored(
        self,
        event: WebhookEvent,
        reason: str,
        *,
        duplicate: bool = False,
    ) -> None:
        self._finish(event, WebhookStatus.IGNORED, response_status=200, error_message=reason)
        event.is_duplicate = duplicate
        event.next_retry_at = None

    def _finish(
        self,
        event: WebhookEvent,
        status: WebhookStatus,
        *,
        response_status: int,
        error_message: Optional[str] = None,
    ) -> None:
        now = self._clock()
        started = event.processing_started_at or event.created_at or now
        event.status = status.value
        event.response_status = response_status
        event.processing_completed_at = now
        event.processing_time_ms = max(0, int((now - started).total_seconds() * 1000))
        if error_message is not None:
            event.error_message = error_message[:MAX_ERROR_LENGTH]
        event.updated_at = now

    async def find_duplicate(
        self,
        db: AsyncSession,
        provider_event_id: Optional[str],
        *,
        exclude_id: Optional[UUID] = None,
    ) -> Optional[WebhookEvent]:
        """Earlier attempt of the same logical event that already completed."""
        if not provider_event_id:
            return None
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider_event_id == provider_event_id,
                WebhookEvent.status == WebhookStatus.COMPLETED.value,
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(WebhookEvent.id != exclude_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    async def get_event(self, db: AsyncSession, event_id: UUID) -> WebhookEvent:
        event = await db.get(WebhookEvent, event_id)
        if event is None:
            raise WebhookEventNotFound()
        return event

    async def list_events(
        self,
        db: AsyncSession,
        filters: WebhookEventFilters,
        *,
        page: int = 1,
        page_size: int = 50,
        newest_first: bool = True,
    ) -> tuple[list[WebhookEvent], int]:
        """Filtered, paginated listing. Returns (items, total)."""
        conditions = []
        if filters.event_type:
            conditions.append(WebhookEvent.event_type == filters.event_type)
        if filters.status:
            conditions.append(WebhookEvent.status == filters.status)
        if filters.customer_id:
            conditions.append(WebhookEvent.associated_customer_id == filters.customer_id)
        if filters.user_id:
            conditions.append(WebhookEvent.associated_user_id == filters.user_id)
        if filters.signature_verified is not None:
            conditions.append(WebhookEvent.signature_verified.is_(filters.signature_verified))
        if filters.start_date:
            conditions.append(WebhookEvent.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(WebhookEvent.created_at <= filters.end_date)

        count_stmt = select(func.count()).select_from(WebhookEvent).where(*conditions)
        total = (await db.execute(count_stmt)).scalar_one()

        order = WebhookEvent.created_at.desc() if newest_first else WebhookEvent.created_at.asc()
        stmt = (
            select(WebhookEvent)
            .where(*conditions)
            .order_by(order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list((await db.execute(stmt)).scalars().all())
        return items, total

    async def get_stats(
        self,
        db: AsyncSession,
        *,
        since: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Counts by status and type plus average processing time."""
        conditions = [WebhookEvent.created_at >= since] if since else []

        status_rows = (
            await db.execute(
                select(WebhookEvent.status, func.count())
                .where(*conditions)
                .group_by(WebhookEvent.status)
            )
        ).all()
        by_status = {status.value: 0 for status in WebhookStatus}
        for status, count in status_rows:
            by_status[status] = count
        total = sum(by_status.values())

        verified = (
            await db.execute(
                select(func.count())
                .select_from(WebhookEvent)
                .where(WebhookEvent.signature_verified.is_(True), *conditions)
            )
        ).scalar_one()

        avg_ms = (
            await db.execute(
                select(func.avg(WebhookEvent.processing_time_ms)).where(
                    WebhookEvent.processing_time_ms.isnot(None), *conditions
                )
            )
        ).scalar_one()

        type_rows = (
            await db.execute(
                select(
                    WebhookEvent.event_type,
                    WebhookEvent.status,
                    func.count(),
                    func.avg(WebhookEvent.processing_time_ms),
                )
                .where(*conditions)
                .group_by(WebhookEvent.event_type, WebhookEvent.status)
            )
        ).all()
        by_type: dict[str, dict[str, Any]] = {}
        for event_type, status, count, type_avg in type_rows:
            entry = by_type.setdefault(
                event_type,
                {"event_type": event_type, "total": 0, "by_status": {}, "_ms": 0.0, "_timed": 0},
            )
            entry["total"] += count
            entry["by_status"][status] = count
            if type_avg is not None:
                entry["_ms"] += float(type_avg) * count
                entry["_timed"] += count

        types = []
        for entry in sorted(by_type.values(), key=lambda item: item["total"], reverse=True):
            timed = entry.pop("_timed")
            total_ms = entry.pop("_ms")
            entry["avg_processing_time_ms"] = round(total_ms / timed, 2) if timed else None
            types.append(entry)

        completed = by_status[WebhookStatus.COMPLETED.value]
        return {
            "total": total,
            "by_status": by_status,
            "signature_verified": verified,
            "avg_processing_time_ms": round(float(avg_ms), 2) if avg_ms is not None else None,
            "success_rate": round(completed / total * 100, 2) if total else None,
            "by_type": types,
        }

    async def get_health(self, db: AsyncSession) -> dict[str, Any]:
        """
        Hourly/daily failure rates, pending backlog and resulting alerts.

        Status: ``healthy`` sem alertas, ``warning`` ou ``critical`` conforme
        os limiares do modulo.
        """
        now = self._clock()
        last_hour = await self._window_counts(db, now - timedelta(hours=1))
        last_day = await self._window_counts(db, now - timedelta(days=1))

        stuck_cutoff = now - timedelta(minutes=STUCK_PENDING_MINUTES)
        stuck_pending = (
            await db.execute(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.PENDING.value,
                    WebhookEvent.retry_count == 0,
                    WebhookEvent.created_at < stuck_cutoff,
                )
            )
        ).scalar_one()
        stuck_processing = (
            await db.execute(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.PROCESSING.value,
                    WebhookEvent.processing_started_at < stuck_cutoff,
                )
            )
        ).scalar_one()
        awaiting_retry = (
            await db.execute(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.PENDING.value,
                    WebhookEvent.retry_count > 0,
                )
            )
        ).scalar_one()
        exhausted = (
            await db.execute(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.FAILED.value,
                    WebhookEvent.signature_verified.is_(True),
                    WebhookEvent.retry_count >= WebhookEvent.max_retries,
                    WebhookEvent.created_at >= now - timedelta(days=1),
                )
            )
        ).scalar_one()

        alerts: list[dict[str, str]] = []
        rate = last_hour["failure_rate"]
        if rate >= FAILURE_RATE_CRITICAL:
            alerts.append({"level": "critical", "message": f"Taxa de falha na ultima hora: {rate}%"})
        elif rate >= FAILURE_RATE_WARNING:
            alerts.append({"level": "warning", "message": f"Taxa de falha na ultima hora: {rate}%"})
        avg_ms = last_hour["avg_processing_time_ms"]
        if avg_ms is not None and avg_ms > SLOW_PROCESSING_MS:
            alerts.append({"level": "warning", "message": f"Processamento lento: media {avg_ms}ms"})
        if stuck_pending:
            alerts.append({
                "level": "warning",
                "message": f"{stuck_pending} eventos pendentes ha mais de {STUCK_PENDING_MINUTES} minutos",
            })
        if stuck_processing:
            alerts.append({
                "level": "warning",
                "message": f"{stuck_processing} eventos em processing ha mais de {STUCK_PENDING_MINUTES} minutos",
            })
        if exhausted:
            alerts.append({"level": "critical", "message": f"{exhausted} eventos com retries esgotados nas ultimas 24h"})

        levels = {alert["level"] for alert in alerts}
        status = "critical" if "critical" in levels else "warning" if levels else "healthy"
        return {
            "status": status,
            "checked_at": now,
            "last_hour": last_hour,
            "last_24h": last_day,
            "stuck_pending": stuck_pending,
            "stuck_processing": stuck_processing,
            "awaiting_retry": awaiting_retry,
            "retry_exhausted_24h": exhausted,
            "alerts": alerts,
        }

    async def _window_counts(self, db: AsyncSession, since: datetime) -> dict[str, Any]:
        rows = (
            await db.execute(
                select(WebhookEvent.status, func.count())
                .where(WebhookEvent.created_at >= since)
                .group_by(WebhookEvent.status)
            )
        ).all()
        counts = {status: count for status, count in rows}
        total = sum(counts.values())
        failed = counts.get(WebhookStatus.FAILED.value, 0)
        avg_ms = (
            await db.execute(
                select(func.avg(WebhookEvent.processing_time_ms)).where(
                    WebhookEvent.created_at >= since,
                    WebhookEvent.processing_time_ms.isnot(None),
                )
            )
        ).scalar_one()
        return {
            "total": total,
            "failed": failed,
            "completed": counts.get(WebhookStatus.COMPLETED.value, 0),
            "failure_rate": round(failed / total * 100, 2) if total else 0.0,
            "avg_processing_time_ms": round(float(avg_ms), 2) if avg_ms is not None else None,
        }

    async def cleanup_older_than(self, db: AsyncSession, days: int) -> int:
        """
        Delete rows older than ``days`` in a terminal, non-actionable state.

        Linhas ``failed`` e ``pending`` ficam para intervencao/retry.
        """
        if days < 1:
            raise ValueError("days deve ser >= 1")
        cutoff = self._clock() - timedelta(days=days)
        stmt = delete(WebhookEvent).where(
            WebhookEvent.created_at < cutoff,
            WebhookEvent.status.in_(PURGEABLE_STATUSES),
        )
        result = await db.execute(stmt)
        deleted = result.rowcount or 0
        logger.info("webhook_cleanup: days=%s cutoff=%s deleted=%s", days, cutoff, deleted)
        return deleted
