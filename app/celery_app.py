from celery import Celery
from celery.signals import worker_ready

from app.config import settings

celery_app = Celery(
    "dotmac_approvals",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.approvals"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "app.tasks.approvals.run_approval_cycle": {
            "queue": settings.approval_scheduler_queue
        },
    },
    beat_schedule={
        "approvals-run-cycle": {
            "task": "app.tasks.approvals.run_approval_cycle",
            "schedule": settings.approval_scheduler_interval_minutes * 60.0,
        },
    },
)


@worker_ready.connect
def _run_cycle_on_startup(sender=None, **kwargs) -> None:
    from app.tasks.approvals import run_approval_cycle

    run_approval_cycle.delay()
