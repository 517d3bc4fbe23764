from celery import Celery

from dealflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "dealflow_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["dealflow.automations.tasks"],
)
celery_app.conf.task_default_queue = "automations"
