"""
Scheduler abstraction — ``schedule(spec, job)`` sobre o Celery Beat.

Jobs sao nomes de task Celery; a expressao cron (5 campos) e validada aqui e
vira um ``crontab``. Testes chamam as funcoes das sweeps direto, com clock
injetado, sem depender do horario real.
"""
from __future__ import annotations

from typing import Any, Optional

from celery.schedules import ParseException, crontab

from billsync.core.config import settings

CRON_FIELDS = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")

TASK_PREFIX = "billsync.workers.tasks"


class InvalidCronExpression(ValueError):
    pass


def parse_cron(spec: str) -> crontab:
    """
    Build a ``crontab`` from a standard 5-field cron expression.

    Raises:
        InvalidCronExpression: numero de campos errado ou campo invalido.
    """
    fields = spec.split()
    if len(fields) != len(CRON_FIELDS):
        raise InvalidCronExpression(
            f"Expressao cron deve ter {len(CRON_FIELDS)} campos: '{spec}'"
        )
    try:
        return crontab(**dict(zip(CRON_FIELDS, fields)))
    except (ValueError, ParseException) as exc:
        raise InvalidCronExpression(f"Expressao cron invalida '{spec}': {exc}") from exc


class SweepScheduler:
    """Collects periodic jobs and renders them as a Celery beat schedule."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    def schedule(self, spec: str, job: str, name: Optional[str] = None) -> str:
        """
        Register ``job`` (task name) to run on cron ``spec``.

        Returns:
            Nome da entrada no beat schedule.
        """
        entry_name = name or job.rsplit(".", 1)[-1].replace("_", "-")
        if entry_name in self._entries:
            raise ValueError(f"Entrada de agendamento duplicada: {entry_name}")
        self._entries[entry_name] = {"task": job, "schedule": parse_cron(spec)}
        return entry_name

    @property
    def beat_schedule(self) -> dict[str, dict[str, Any]]:
        return dict(self._entries)


def build_default_schedule() -> SweepScheduler:
    """Sweeps de reconciliacao e manutencao do log de webhooks."""
    scheduler = SweepScheduler()
    billing = f"{TASK_PREFIX}.billing_tasks"
    maintenance = f"{TASK_PREFIX}.maintenance_tasks"

    scheduler.schedule(settings.SWEEP_EXPIRY_WARNING_CRON, f"{billing}.send_expiry_warnings")
    scheduler.schedule(settings.SWEEP_EXPIRE_TO_FREE_CRON, f"{billing}.expire_to_free")
    scheduler.schedule(settings.SWEEP_ORPHAN_RECOVERY_CRON, f"{billing}.recover_orphan_subscriptions")
    scheduler.schedule(settings.SWEEP_FAILED_PAYMENT_CRON, f"{billing}.cancel_failed_payments")
    scheduler.schedule(settings.SWEEP_WEEKLY_DIGEST_CRON, f"{billing}.send_weekly_digest")
    scheduler.schedule(settings.SWEEP_FREE_PLAN_REMINDER_CRON, f"{billing}.send_free_plan_reminders")
    scheduler.schedule(settings.WEBHOOK_RETRY_CRON, f"{billing}.retry_failed_webhooks")
    scheduler.schedule(settings.WEBHOOK_CLEANUP_CRON, f"{maintenance}.cleanup_webhook_events")
    scheduler.schedule(settings.WEBHOOK_HEALTH_CRON, f"{maintenance}.webhook_health_check")
    return scheduler
