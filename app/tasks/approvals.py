import logging

from app.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.approvals.run_approval_cycle", ignore_result=True)
def run_approval_cycle() -> None:
    """Periodic approval tick.

    Dispatches queued notifications, escalates timed-out levels, queues
    reminders, reschedules failed deliveries and purges old notifications.
    """
    from app.db import SessionLocal
    from app.services.approval_scheduler import approval_scheduler

    db = SessionLocal()
    try:
        report = approval_scheduler.tick(db)
        if report.failed_steps:
            logger.warning("Approval cycle had failed steps: %s", report.failed_steps)
    except Exception as e:
        logger.exception("Approval cycle failed: %s", e)
    finally:
        db.close()
