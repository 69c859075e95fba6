from celery import Celery
from app.core.config import settings

celery = Celery(
    "leadflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=["app.workers.tasks_effects"],
)

celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    enable_utc=True,
    # em testes os efeitos rodam no próprio processo
    task_always_eager=(settings.APP_ENV or "").lower() == "test",
)
