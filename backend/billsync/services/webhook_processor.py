"""
Webhook processor — pipeline de ingestao de eventos de billing.

Fluxo por entrega:
1. log_attempt (pending) + commit, antes de qualquer verificacao;
2. verificacao de assinatura (falha -> failed, 400);
3. checagem de duplicata (twin completed -> ignored, 200);
4. roteamento (tipo sem handler -> ignored, 200);
5. processing + handler sob orcamento de tempo;
6. completed (200) ou failed/retry agendado (500).

Notificacoes so sao emitidas depois do commit final.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.core.exceptions import (
    BillingError,
    PermanentHandlerFailure,
    SignatureInvalid,
    TransientHandlerFailure,
    UnknownEventType,
    WebhookEventNotFound,
)
from billsync.models.webhook_event import WebhookEvent, WebhookStatus
from billsync.services.billing_provider import BillingProviderClient, StripeBillingClient
from billsync.services.event_router import EventRouter, HandlerResult, Ok, Permanent, Retryable
from billsync.services.idempotency_guard import IdempotencyGuard
from billsync.services.leases import AdvisoryLock, SingleFlight
from billsync.services.notifications import LoggingNotifier, Notifier, dispatch_notifications
from billsync.services.retry_scheduler import RetryScheduler
from billsync.services.signature_verifier import VerifiedEvent, WebhookSignatureVerifier
from billsync.services.subscription_state_machine import SubscriptionStateMachine
from billsync.services.webhook_event_service import RawWebhookRequest, WebhookEventService

logger = logging.getLogger(__name__)

RETRY_JOB_NAME = "webhook_retry"

# folga sobre o timeout do handler antes de considerar processing abandonado
STALE_PROCESSING_MARGIN_SECONDS = 60


@dataclass
class WebhookOutcome:
    """HTTP response to hand back to the provider."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    log_id: Optional[UUID] = None


class WebhookProcessor:
    """
    Receives raw deliveries and drives them to a terminal state.

    Controla as fronteiras de transacao; services abaixo so fazem flush.
    """

    def __init__(
        self,
        *,
        verifier: WebhookSignatureVerifier,
        events: WebhookEventService,
        router: EventRouter,
        guard: IdempotencyGuard,
        retries: RetryScheduler,
        notifier: Optional[Notifier] = None,
        single_flight: Optional[SingleFlight] = None,
        handler_timeout_seconds: float = 25.0,
        retry_batch_size: int = 50,
    ) -> None:
        self._verifier = verifier
        self._events = events
        self._router = router
        self._guard = guard
        self._retries = retries
        self._notifier = notifier or LoggingNotifier()
        self._single_flight = single_flight
        self._timeout = handler_timeout_seconds
        self._retry_batch_size = retry_batch_size

    @classmethod
    def from_settings(
        cls,
        redis: Any,
        *,
        notifier: Optional[Notifier] = None,
        provider: Optional[BillingProviderClient] = None,
        clock: Clock = utcnow,
    ) -> WebhookProcessor:
        """Wire the default component graph from environment settings."""
        events = WebhookEventService.from_settings(clock=clock)
        guard = IdempotencyGuard.from_settings(events, clock=clock)
        machine = SubscriptionStateMachine.from_settings(
            guard=guard,
            locks=AdvisoryLock.from_settings(redis, wait=True),
            provider=provider or StripeBillingClient.from_settings(),
            clock=clock,
        )
        return cls(
            verifier=WebhookSignatureVerifier(
                settings.STRIPE_WEBHOOK_SECRET,
                tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            ),
            events=events,
            router=EventRouter.for_state_machine(machine),
            guard=guard,
            retries=RetryScheduler.from_settings(clock=clock),
            notifier=notifier,
            single_flight=SingleFlight.from_settings(redis),
            handler_timeout_seconds=settings.WEBHOOK_HANDLER_TIMEOUT_SECONDS,
            retry_batch_size=settings.WEBHOOK_RETRY_BATCH_SIZE,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def receive(self, db: AsyncSession, raw: RawWebhookRequest) -> WebhookOutcome:
        """Log, verify and process one inbound delivery."""
        log = await self._events.log_attempt(db, raw)
        await db.commit()

        try:
            verified = self._verifier.verify(raw.body, raw.signature)
        except SignatureInvalid as exc:
            self._events.mark_failed(log, exc.detail, response_status=400)
            self._retries.exhaust(log)
            await db.commit()
            logger.warning(
                "webhook_signature_invalid: log_id=%s ip=%s detail=%s",
                log.id, raw.source_ip, exc.detail,
            )
            return WebhookOutcome(400, {"received": False, "error": exc.detail}, log.id)
        except PermanentHandlerFailure as exc:
            log.signature_verified = True
            self._events.mark_failed(log, exc.detail, response_status=400)
            self._retries.exhaust(log)
            await db.commit()
            logger.error("webhook_malformed: log_id=%s detail=%s", log.id, exc.detail)
            return WebhookOutcome(400, {"received": False, "error": exc.detail}, log.id)

        await self._events.attach_parsed_event(db, log, verified, signature_verified=True)
        return await self._dispatch(db, log, verified)

    async def retry_due_events(self, db: AsyncSession) -> dict[str, int]:
        """
        Re-run every pending event whose backoff elapsed (polling worker).

        Reprocessa a partir do payload armazenado, sem nova verificacao.
        Antes, linhas abandonadas em processing voltam ao orcamento de retry.
        """
        result = {
            "checked": 0, "completed": 0, "rescheduled": 0, "failed": 0, "ignored": 0, "requeued": 0,
        }
        if self._single_flight is None:
            return await self._retry_batch(db, result)

        async with self._single_flight.guard(RETRY_JOB_NAME) as acquired:
            if not acquired:
                result["skipped_run"] = 1
                return result
            return await self._retry_batch(db, result)

    async def manual_retry(self, db: AsyncSession, log_id: UUID) -> WebhookOutcome:
        """
        Operator-triggered reprocessing, allowed even after exhaustion.

        Raises:
            WebhookEventNotFound: id inexistente.
            BillingError: evento sem assinatura verificada, ou ja concluido.
        """
        log = await db.get(WebhookEvent, log_id)
        if log is None:
            raise WebhookEventNotFound()
        if not log.signature_verified or not log.parsed_data:
            raise BillingError(
                "Evento sem assinatura verificada nao pode ser reprocessado.",
                code="not_retryable",
            )
        if log.status not in (WebhookStatus.FAILED.value, WebhookStatus.PENDING.value):
            raise BillingError(
                f"Evento em status '{log.status}' nao pode ser reprocessado.",
                code="not_retryable",
            )

        event = VerifiedEvent.from_payload(log.parsed_data)
        log.next_retry_at = None
        logger.info("webhook_manual_retry: log_id=%s event_id=%s", log.id, log.provider_event_id)
        return await self._dispatch(db, log, event)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _requeue_stale(self, db: AsyncSession, result: dict[str, int]) -> None:
        stale_after = timedelta(seconds=self._timeout + STALE_PROCESSING_MARGIN_SECONDS)
        stale = await self._retries.find_stale_processing(
            db, stale_after=stale_after, limit=self._retry_batch_size,
        )
        for log in stale:
            self._events.mark_failed(log, "Processamento interrompido antes da conclusao")
            self._retries.schedule_retry(log)
            logger.warning(
                "webhook_stale_processing: log_id=%s event_id=%s started_at=%s",
                log.id, log.provider_event_id, log.processing_started_at,
            )
            result["requeued"] += 1
        if stale:
            await db.commit()

    async def _retry_batch(self, db: AsyncSession, result: dict[str, int]) -> dict[str, int]:
        await self._requeue_stale(db, result)
        due = await self._retries.find_due(db, limit=self._retry_batch_size)
        # Rollbacks de handlers expiram a sessao; recarrega por id a cada volta
        for log_id in [log.id for log in due]:
            result["checked"] += 1
            log = await db.get(WebhookEvent, log_id)
            try:
                event = VerifiedEvent.from_payload(log.parsed_data or {})
            except PermanentHandlerFailure as exc:
                self._events.mark_failed(log, exc.detail)
                self._retries.exhaust(log)
                await db.commit()
                result["failed"] += 1
                continue

            outcome = await self._dispatch(db, log, event)
            refreshed = await db.get(WebhookEvent, log_id)
            status = refreshed.status if refreshed else None
            if outcome.status_code == 200 and status == WebhookStatus.COMPLETED.value:
                result["completed"] += 1
            elif status == WebhookStatus.IGNORED.value:
                result["ignored"] += 1
            elif status == WebhookStatus.PENDING.value:
                result["rescheduled"] += 1
            else:
                result["failed"] += 1

        logger.info("retry_due_events: %s", result)
        return result

    async def _dispatch(
        self,
        db: AsyncSession,
        log: WebhookEvent,
        event: VerifiedEvent,
    ) -> WebhookOutcome:
        twin = await self._guard.already_processed(db, event.id, exclude_id=log.id)
        if twin is not None:
            self._events.mark_ignored(log, f"Duplicata de {twin.id}", duplicate=True)
            await db.commit()
            logger.info(
                "webhook_duplicate: log_id=%s event_id=%s original=%s",
                log.id, event.id, twin.id,
            )
            return WebhookOutcome(200, {"received": True, "duplicate": True}, log.id)

        try:
            handler = self._router.resolve(event.type)
        except UnknownEventType as exc:
            self._events.mark_ignored(log, exc.detail)
            await db.commit()
            logger.info("webhook_ignored: log_id=%s type=%s", log.id, event.type)
            return WebhookOutcome(200, {"received": True, "ignored": True}, log.id)

        self._events.mark_processing(log)
        await db.commit()
        log_id = log.id

        result = await self._run_handler(handler, db, event, log)
        return await self._settle(db, log_id, event, result)

    async def _run_handler(
        self,
        handler: Any,
        db: AsyncSession,
        event: VerifiedEvent,
        log: WebhookEvent,
    ) -> HandlerResult:
        """Run ``handler`` under the wall-clock budget, classifying failures."""
        try:
            return await asyncio.wait_for(handler(db, event, log), timeout=self._timeout)
        except asyncio.TimeoutError:
            return Retryable(
                TransientHandlerFailure(
                    f"Handler excedeu {self._timeout}s para {event.type}",
                    code="handler_timeout",
                )
            )
        except PermanentHandlerFailure as exc:
            return Permanent(exc)
        except TransientHandlerFailure as exc:
            return Retryable(exc)
        except SQLAlchemyError as exc:
            logger.exception("webhook_db_error: event_id=%s", event.id)
            return Retryable(TransientHandlerFailure(f"Erro de banco: {exc}", code="database_error"))
        except Exception as exc:
            logger.exception("webhook_handler_crashed: event_id=%s type=%s", event.id, event.type)
            return Retryable(exc)

    async def _settle(
        self,
        db: AsyncSession,
        log_id: UUID,
        event: VerifiedEvent,
        result: HandlerResult,
    ) -> WebhookOutcome:
        if isinstance(result, Ok):
            log = await db.get(WebhookEvent, log_id)
            self._events.mark_completed(log)
            await db.commit()
            logger.info(
                "webhook_completed: log_id=%s event_id=%s type=%s ms=%s",
                log_id, event.id, event.type, log.processing_time_ms,
            )
            await dispatch_notifications(self._notifier, result.notifications)
            return WebhookOutcome(200, {"received": True}, log_id)

        # Desfaz escritas nao commitadas do handler; o que ja foi commitado fica
        await db.rollback()
        log = await db.get(WebhookEvent, log_id)
        error = result.error
        detail = getattr(error, "detail", None) or str(error) or error.__class__.__name__

        self._events.mark_failed(log, detail)
        if isinstance(result, Permanent):
            self._retries.exhaust(log)
            logger.error(
                "webhook_failed_permanently: log_id=%s event_id=%s detail=%s",
                log_id, event.id, detail,
            )
        else:
            self._retries.schedule_retry(log)
        await db.commit()
        return WebhookOutcome(500, {"received": False, "error": detail}, log_id)
