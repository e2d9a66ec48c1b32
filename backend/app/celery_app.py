from celery import Celery
from app.core.config import settings

# Create Celery app instance
celery_app = Celery(
    "school_notify",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "app.notifications.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task routing
    task_routes={
        "app.notifications.tasks.*": {"queue": "notifications"},
    },

    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task result settings
    result_expires=3600,  # 1 hour

    # Task retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Task time limits
    task_soft_time_limit=120,  # receipt lookups go out in chunks of 1000 ids
    task_time_limit=300,
)

if __name__ == "__main__":
    celery_app.start()
