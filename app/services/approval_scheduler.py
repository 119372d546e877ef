import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from app.observability import SCHEDULER_CYCLES
from app.services.approval_escalation import ApprovalEscalations, approval_escalations
from app.services.approval_notification import (
    ApprovalNotifications,
    approval_notifications,
)
from app.services.common import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    started_at: datetime
    skipped: bool = False
    dispatched: dict = field(default_factory=dict)
    escalations: dict = field(default_factory=dict)
    retried: dict = field(default_factory=dict)
    purged: int = 0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failed_steps


def run_cycle(
    db: Session,
    now: datetime | None = None,
    notifications: ApprovalNotifications = approval_notifications,
    escalations: ApprovalEscalations = approval_escalations,
) -> CycleReport:
    """One scheduler tick.

    Steps run in a fixed order. A step that raises is logged and recorded in
    ``failed_steps``; later steps still run.
    """
    now = now or utcnow()
    report = CycleReport(started_at=now)
    steps = (
        ("dispatch", lambda: notifications.process_pending(db, now=now)),
        ("escalations", lambda: escalations.evaluate(db, now=now)),
        ("retry", lambda: notifications.retry_failed(db, now=now)),
        ("purge", lambda: notifications.purge(db, now=now)),
    )
    for name, step in steps:
        try:
            result = step()
        except Exception:
            db.rollback()
            report.failed_steps.append(name)
            logger.exception("Approval scheduler step %s failed", name)
            continue
        if name == "dispatch":
            report.dispatched = result
        elif name == "escalations":
            report.escalations = result
        elif name == "retry":
            report.retried = result
        else:
            report.purged = result

    SCHEDULER_CYCLES.labels(outcome="ok" if report.ok else "partial").inc()
    logger.info(
        "Approval cycle done: dispatched=%s escalations=%s retried=%s purged=%d failed=%s",
        report.dispatched,
        report.escalations,
        report.retried,
        report.purged,
        report.failed_steps,
    )
    return report


class ApprovalScheduler:
    """Serializes cycles within a process; an overlapping tick is skipped.

    The lock does not span worker processes. The cycle task is routed to
    its own queue (``APPROVAL_SCHEDULER_QUEUE``), which is meant to be
    consumed by a single worker started with ``--concurrency=1``. Across
    processes the row locks taken by ``ApprovalInstances.lock`` still keep
    two cycles from advancing the same instance twice.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def tick(self, db: Session, now: datetime | None = None) -> CycleReport:
        if not self._lock.acquire(blocking=False):
            logger.warning("Approval cycle already running; skipping this tick")
            SCHEDULER_CYCLES.labels(outcome="skipped").inc()
            return CycleReport(started_at=now or utcnow(), skipped=True)
        try:
            return run_cycle(db, now=now)
        finally:
            self._lock.release()


approval_scheduler = ApprovalScheduler()
