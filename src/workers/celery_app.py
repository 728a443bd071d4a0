from celery import Celery

from config import settings

celery_app = Celery(
    "shelfmatch",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_routes={"workers.tasks.run_scope_matching": {"queue": settings.matching_queue}},
    task_time_limit=settings.batch_task_time_limit_seconds,
    task_soft_time_limit=int(settings.batch_task_time_limit_seconds * 0.9),
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
)
