"""
Celery configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_url = settings.redis_url

# Create Celery instance
celery_app = Celery(
    "dte_engine",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.taxdocs.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Santiago",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # La API de la autoridad limita la tasa de llamadas
    task_default_rate_limit="10/m",

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.taxdocs.tasks.*": {"queue": "taxdocs"},
    },
)

# Importación diaria de documentos recibidos para el tenant por defecto
if settings.DEFAULT_TENANT_ID:
    celery_app.conf.beat_schedule = {
        "import-received-documents": {
            "task": "app.modules.taxdocs.tasks.import_received_documents_task",
            "schedule": crontab(hour=6, minute=0),
            "kwargs": {"tenant_id": settings.DEFAULT_TENANT_ID},
        },
    }
else:
    logger.info("DEFAULT_TENANT_ID no configurado: sin importación programada")

if __name__ == "__main__":
    celery_app.start()
