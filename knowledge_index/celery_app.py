# knowledge_index/celery_app.py
from celery import Celery
from knowledge_index.config import settings

celery_app = Celery(
    "knowledge_ingest",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["knowledge_index.tasks"],
)

celery_app.conf.task_routes = {
    "knowledge_index.tasks.process_document_task": {"queue": settings.celery_queue}
}

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_soft_time_limit=int(settings.ingest_timeout_seconds or 60 * 30),
)
