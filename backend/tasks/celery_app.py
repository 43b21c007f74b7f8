from celery import Celery

from bloodlink.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bloodlink",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "tasks.notification_tasks",
        "tasks.request_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications.email"},
        "tasks.request_tasks.*": {"queue": "requests.maintenance"},
    },
    beat_schedule={
        "expire-overdue-requests": {
            "task": "tasks.request_tasks.expire_overdue_requests",
            "schedule": settings.EXPIRY_SWEEP_INTERVAL_SECONDS,  # Every 15 minutes by default
        },
    },
)
