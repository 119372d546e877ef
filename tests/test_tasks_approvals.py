from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.models.approval import ApprovalNotification, NotificationStatus
from app.schemas.approval import ApprovalLevel, SubmitForApprovalRequest
from app.services.approval_instance import approval_instances


class TestRunApprovalCycle:
    def test_dispatches_queued_notifications(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory([ApprovalLevel(level=1, approver_ids=[approvers[0].id])])
        approval_instances.submit(
            db_session,
            str(document.id),
            SubmitForApprovalRequest(submitted_by=person.id),
            now=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        with patch("app.db.SessionLocal", return_value=db_session):
            with patch.object(db_session, "close"):
                from app.tasks.approvals import run_approval_cycle

                run_approval_cycle()

        notification = db_session.query(ApprovalNotification).one()
        assert notification.status == NotificationStatus.sent

    def test_errors_are_logged_not_raised(self, db_session) -> None:
        with patch("app.db.SessionLocal", return_value=db_session):
            with patch.object(db_session, "close") as mock_close:
                with patch(
                    "app.services.approval_scheduler.approval_scheduler.tick",
                    side_effect=RuntimeError("broker gone"),
                ):
                    from app.tasks.approvals import run_approval_cycle

                    run_approval_cycle()
        mock_close.assert_called_once()

    def test_beat_schedule_registered(self) -> None:
        from app.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["approvals-run-cycle"]
        assert entry["task"] == "app.tasks.approvals.run_approval_cycle"
        assert entry["schedule"] == 15 * 60.0


class TestCeleryConfig:
    def test_cycle_runs_on_its_own_queue(self) -> None:
        from app.celery_app import celery_app
        from app.config import settings

        route = celery_app.conf.task_routes["app.tasks.approvals.run_approval_cycle"]
        assert route == {"queue": settings.approval_scheduler_queue}
        schedule = celery_app.conf.beat_schedule["approvals-run-cycle"]
        assert schedule["task"] == "app.tasks.approvals.run_approval_cycle"
