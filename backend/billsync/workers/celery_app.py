"""
Celery application factory.

Configura broker, backend, serialização, limites e beat schedule.
"""
from celery import Celery

from billsync.core.config import settings
from billsync.workers.scheduler import build_default_schedule

celery_app = Celery("billsync")

celery_app.conf.update(
    # Broker / Backend
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    # Serialização
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Reliability
    broker_connection_retry_on_startup=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Limites
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    # Resultados
    result_expires=3600,
    # Beat schedule file path (writeable in containers)
    beat_schedule_filename="/tmp/celerybeat-schedule",
)

# Registrar modulos de tasks explicitamente
celery_app.conf.include = [
    "billsync.workers.tasks.billing_tasks",
    "billsync.workers.tasks.maintenance_tasks",
]

# Garantir que todos os models SQLAlchemy sao importados antes de qualquer task
# rodar, evitando falha de mapper initialization.
import billsync.models  # noqa: F401, E402

# Beat schedule — sweeps de reconciliacao e manutencao (cron via settings)
celery_app.conf.beat_schedule = build_default_schedule().beat_schedule
