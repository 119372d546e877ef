import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models.approval import (
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalNotification,
    ApprovalRecord,
    ApprovalRecordStatus,
    DelegationRecord,
    EscalationRecord,
    EscalationType,
    NotificationType,
)
from app.models.document import Document, DocumentStatus
from app.schemas.approval import (
    ApprovalDecisionRequest,
    ApprovalLevel,
    CancelApprovalRequest,
    DelegateApprovalRequest,
    DelegationRule,
    EscalateApprovalRequest,
    SkipCondition,
    SubmitForApprovalRequest,
)
from app.services.approval_instance import approval_instances, condition_holds
from app.services.errors import (
    ApprovalNotFound,
    InvalidApprovalState,
    NoPendingApproval,
    NoWorkflowConfigured,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _submit(db_session, document, person, now=NOW):
    return approval_instances.submit(
        db_session,
        str(document.id),
        SubmitForApprovalRequest(submitted_by=person.id),
        now=now,
    )


def _decide(db_session, instance, level, approver, action="approve", comments=None):
    return approval_instances.process(
        db_session,
        str(instance.id),
        ApprovalDecisionRequest(
            level=level,
            approver_user_id=approver.id,
            action=action,
            comments=comments,
        ),
        now=NOW + timedelta(hours=1),
    )


def _records(db_session, instance, level):
    return (
        db_session.query(ApprovalRecord)
        .filter(ApprovalRecord.instance_id == instance.id, ApprovalRecord.level == level)
        .all()
    )


def _notifications(db_session, instance, notification_type):
    return (
        db_session.query(ApprovalNotification)
        .filter(
            ApprovalNotification.instance_id == instance.id,
            ApprovalNotification.notification_type == notification_type,
        )
        .all()
    )


@pytest.fixture()
def two_level_workflow(workflow_factory, approvers):
    return workflow_factory(
        [
            ApprovalLevel(level=1, name="Supervisor", approver_ids=[approvers[0].id]),
            ApprovalLevel(
                level=2,
                name="Finance",
                approver_ids=[approvers[1].id, approvers[2].id],
                required_approvals=2,
                is_parallel=True,
            ),
        ]
    )


class TestSubmit:
    def test_submit_creates_level_one_records(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)

        assert instance.status == ApprovalInstanceStatus.in_progress
        assert instance.current_level == 1
        assert instance.workflow_id == two_level_workflow.id
        records = _records(db_session, instance, 1)
        assert [r.approver_user_id for r in records] == [approvers[0].id]
        assert records[0].status == ApprovalRecordStatus.pending

        db_session.refresh(document)
        assert document.status == DocumentStatus.submitted

        requests = _notifications(db_session, instance, NotificationType.request)
        assert len(requests) == 1
        assert requests[0].recipient_user_id == approvers[0].id
        assert requests[0].template == "approval_request"

    def test_submit_missing_document(self, db_session, person) -> None:
        with pytest.raises(ApprovalNotFound):
            approval_instances.submit(
                db_session,
                str(uuid.uuid4()),
                SubmitForApprovalRequest(submitted_by=person.id),
            )

    def test_submit_requires_draft(
        self, db_session, person, document, two_level_workflow
    ) -> None:
        document.status = DocumentStatus.approved
        db_session.commit()
        with pytest.raises(InvalidApprovalState):
            _submit(db_session, document, person)

    def test_submit_without_resolvable_approvers_leaves_nothing(
        self, db_session, person, document, workflow_factory
    ) -> None:
        workflow_factory([ApprovalLevel(level=1, approver_roles=["nobody"])])
        with pytest.raises(InvalidApprovalState):
            _submit(db_session, document, person)
        db_session.commit()

        assert db_session.query(ApprovalInstance).count() == 0
        assert db_session.query(ApprovalNotification).count() == 0
        doc = db_session.get(Document, document.id)
        assert doc.status == DocumentStatus.draft

    def test_submit_without_workflow(self, db_session, person, document) -> None:
        with pytest.raises(NoWorkflowConfigured) as exc:
            _submit(db_session, document, person)
        assert exc.value.status_code == 422

    def test_submit_resolves_role_approvers(
        self, db_session, person, approvers, document, workflow_factory, manager_role
    ) -> None:
        workflow_factory([ApprovalLevel(level=1, approver_roles=["manager"])])
        instance = _submit(db_session, document, person)
        holders = {r.approver_user_id for r in _records(db_session, instance, 1)}
        assert holders == {approvers[2].id, approvers[3].id}

    def test_skip_conditions_skip_level(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [
                ApprovalLevel(
                    level=1,
                    approver_ids=[approvers[0].id],
                    skip_conditions=[
                        SkipCondition(field="total", operator="less_than", value=5000),
                        SkipCondition(
                            field="customer.tier", operator="equals", value="gold"
                        ),
                    ],
                ),
                ApprovalLevel(level=2, approver_ids=[approvers[1].id]),
            ]
        )
        instance = _submit(db_session, document, person)
        assert instance.current_level == 2
        assert _records(db_session, instance, 1) == []
        assert len(_records(db_session, instance, 2)) == 1

    def test_all_levels_skipped_completes(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [
                ApprovalLevel(
                    level=1,
                    approver_ids=[approvers[0].id],
                    skip_conditions=[
                        SkipCondition(field="total", operator="greater_than", value=0)
                    ],
                )
            ]
        )
        instance = _submit(db_session, document, person)
        assert instance.status == ApprovalInstanceStatus.approved
        assert instance.completed_at is not None
        db_session.refresh(document)
        assert document.status == DocumentStatus.approved
        assert len(_notifications(db_session, instance, NotificationType.completed)) == 1

    def test_delegation_rule_applied_on_generation(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [ApprovalLevel(level=1, approver_ids=[approvers[0].id])],
            delegation_rules=[
                DelegationRule(
                    from_user_id=approvers[0].id,
                    to_user_id=approvers[3].id,
                    start_date=NOW - timedelta(days=1),
                    end_date=NOW + timedelta(days=1),
                )
            ],
        )
        instance = _submit(db_session, document, person)
        record = _records(db_session, instance, 1)[0]
        assert record.approver_user_id == approvers[3].id
        assert record.original_approver_user_id == approvers[0].id
        assert db_session.query(DelegationRecord).count() == 1

    def test_expired_delegation_rule_ignored(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [ApprovalLevel(level=1, approver_ids=[approvers[0].id])],
            delegation_rules=[
                DelegationRule(
                    from_user_id=approvers[0].id,
                    to_user_id=approvers[3].id,
                    start_date=NOW - timedelta(days=10),
                    end_date=NOW - timedelta(days=5),
                )
            ],
        )
        instance = _submit(db_session, document, person)
        assert _records(db_session, instance, 1)[0].approver_user_id == approvers[0].id


class TestProcess:
    def test_level_progression_to_approved(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)

        instance = _decide(db_session, instance, 1, approvers[0])
        assert instance.current_level == 2
        assert instance.status == ApprovalInstanceStatus.in_progress
        assert len(_records(db_session, instance, 2)) == 2

        instance = _decide(db_session, instance, 2, approvers[1])
        assert instance.current_level == 2
        assert instance.status == ApprovalInstanceStatus.in_progress

        instance = _decide(db_session, instance, 2, approvers[2])
        assert instance.status == ApprovalInstanceStatus.approved
        assert instance.completed_at is not None
        db_session.refresh(document)
        assert document.status == DocumentStatus.approved
        assert len(_notifications(db_session, instance, NotificationType.completed)) == 1
        assert len(_notifications(db_session, instance, NotificationType.approved)) == 3

    def test_rejection_terminates(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        instance = _decide(
            db_session, instance, 1, approvers[0], action="reject", comments="Too pricey"
        )
        assert instance.status == ApprovalInstanceStatus.rejected
        assert instance.completed_at is not None
        assert _records(db_session, instance, 2) == []
        db_session.refresh(document)
        assert document.status == DocumentStatus.rejected

        rejected = _notifications(db_session, instance, NotificationType.rejected)
        assert rejected[0].recipient_user_id == person.id
        assert rejected[0].data["reason"] == "Too pricey"

        with pytest.raises(InvalidApprovalState):
            _decide(db_session, instance, 1, approvers[0])

    def test_no_double_advance(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        _decide(db_session, instance, 1, approvers[0])
        with pytest.raises(NoPendingApproval):
            _decide(db_session, instance, 1, approvers[0])
        db_session.refresh(instance)
        assert instance.current_level == 2
        assert len(_records(db_session, instance, 2)) == 2

    def test_unresolvable_next_level_rolls_back_decision(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [
                ApprovalLevel(level=1, approver_ids=[approvers[0].id]),
                ApprovalLevel(level=2, approver_roles=["nobody"]),
            ]
        )
        instance = _submit(db_session, document, person)
        with pytest.raises(InvalidApprovalState):
            _decide(db_session, instance, 1, approvers[0])
        db_session.commit()

        db_session.refresh(instance)
        assert instance.current_level == 1
        assert instance.status == ApprovalInstanceStatus.in_progress
        assert _records(db_session, instance, 1)[0].status == ApprovalRecordStatus.pending
        assert _notifications(db_session, instance, NotificationType.approved) == []

    def test_decision_by_non_approver(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        with pytest.raises(NoPendingApproval) as exc:
            _decide(db_session, instance, 1, approvers[3])
        assert exc.value.status_code == 409

    def test_decision_on_wrong_level(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        with pytest.raises(NoPendingApproval):
            _decide(db_session, instance, 2, approvers[1])

    def test_missing_instance(self, db_session, approvers) -> None:
        with pytest.raises(ApprovalNotFound):
            approval_instances.process(
                db_session,
                str(uuid.uuid4()),
                ApprovalDecisionRequest(
                    level=1, approver_user_id=approvers[0].id, action="approve"
                ),
            )

    def test_sequential_level_counts_any_order(
        self, db_session, person, approvers, document, workflow_factory
    ) -> None:
        workflow_factory(
            [
                ApprovalLevel(
                    level=1,
                    approver_ids=[approvers[0].id, approvers[1].id],
                    required_approvals=2,
                    is_parallel=False,
                )
            ]
        )
        instance = _submit(db_session, document, person)
        instance = _decide(db_session, instance, 1, approvers[1])
        assert instance.status == ApprovalInstanceStatus.in_progress
        instance = _decide(db_session, instance, 1, approvers[0])
        assert instance.status == ApprovalInstanceStatus.approved


class TestDelegate:
    def test_delegate_rewrites_record(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        approval_instances.delegate(
            db_session,
            str(instance.id),
            DelegateApprovalRequest(
                level=1,
                from_user_id=approvers[0].id,
                to_user_id=approvers[3].id,
                reason="On leave",
            ),
            now=NOW,
        )
        record = _records(db_session, instance, 1)[0]
        assert record.approver_user_id == approvers[3].id
        assert record.original_approver_user_id == approvers[0].id
        assert record.status == ApprovalRecordStatus.pending
        assert db_session.query(DelegationRecord).count() == 1

        delegated = _notifications(db_session, instance, NotificationType.delegated)
        assert delegated[0].recipient_user_id == approvers[3].id

        instance = _decide(db_session, instance, 1, approvers[3])
        assert instance.current_level == 2

    def test_delegate_without_pending_record(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        with pytest.raises(NoPendingApproval):
            approval_instances.delegate(
                db_session,
                str(instance.id),
                DelegateApprovalRequest(
                    level=1, from_user_id=approvers[2].id, to_user_id=approvers[3].id
                ),
            )

    def test_delegate_to_existing_holder(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        _decide(db_session, instance, 1, approvers[0])
        with pytest.raises(InvalidApprovalState):
            approval_instances.delegate(
                db_session,
                str(instance.id),
                DelegateApprovalRequest(
                    level=2, from_user_id=approvers[1].id, to_user_id=approvers[2].id
                ),
            )


class TestEscalateAndCancel:
    def test_manual_escalation(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        instance = approval_instances.escalate(
            db_session,
            str(instance.id),
            EscalateApprovalRequest(
                from_level=1, to_level=2, reason="Urgent", escalated_by=person.id
            ),
            now=NOW,
        )
        assert instance.current_level == 2
        assert instance.status == ApprovalInstanceStatus.in_progress
        assert _records(db_session, instance, 1)[0].status == ApprovalRecordStatus.escalated
        assert len(_records(db_session, instance, 2)) == 2

        escalation = db_session.query(EscalationRecord).one()
        assert escalation.escalation_type == EscalationType.manual
        assert (escalation.from_level, escalation.to_level) == (1, 2)
        recipients = {
            n.recipient_user_id
            for n in _notifications(db_session, instance, NotificationType.escalated)
        }
        assert recipients == {approvers[1].id, approvers[2].id}

    def test_escalate_from_wrong_level(
        self, db_session, person, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        with pytest.raises(InvalidApprovalState):
            approval_instances.escalate(
                db_session,
                str(instance.id),
                EscalateApprovalRequest(from_level=2, to_level=3, reason="x"),
            )

    def test_escalate_to_unknown_level(
        self, db_session, person, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        with pytest.raises(InvalidApprovalState):
            approval_instances.escalate(
                db_session,
                str(instance.id),
                EscalateApprovalRequest(from_level=1, to_level=7, reason="x"),
            )

    def test_cancel_returns_document_to_draft(
        self, db_session, person, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        instance = approval_instances.cancel(
            db_session,
            str(instance.id),
            CancelApprovalRequest(cancelled_by=person.id, reason="Wrong file"),
        )
        assert instance.status == ApprovalInstanceStatus.cancelled
        assert instance.completed_at is not None
        doc = db_session.get(Document, document.id)
        assert doc.status == DocumentStatus.draft

        with pytest.raises(InvalidApprovalState):
            approval_instances.cancel(
                db_session,
                str(instance.id),
                CancelApprovalRequest(cancelled_by=person.id),
            )
        resubmitted = _submit(db_session, document, person)
        assert resubmitted.id != instance.id


class TestQueries:
    def test_pending_for_approver(
        self, db_session, person, approvers, document, two_level_workflow
    ) -> None:
        instance = _submit(db_session, document, person)
        pending = approval_instances.pending_for(db_session, str(approvers[0].id))
        assert len(pending) == 1
        assert pending[0]["instance_id"] == instance.id
        assert pending[0]["document_id"] == document.id
        assert approval_instances.pending_for(db_session, str(approvers[1].id)) == []

        _decide(db_session, instance, 1, approvers[0])
        assert approval_instances.pending_for(db_session, str(approvers[0].id)) == []
        assert len(approval_instances.pending_for(db_session, str(approvers[1].id))) == 1

    def test_history(self, db_session, person, approvers, document, two_level_workflow) -> None:
        first = _submit(db_session, document, person)
        approval_instances.cancel(
            db_session, str(first.id), CancelApprovalRequest(cancelled_by=person.id)
        )
        _submit(db_session, document, person, now=NOW + timedelta(days=1))
        history = approval_instances.history(db_session, str(document.id))
        assert len(history) == 2
        assert history[1].id == first.id
        assert len(history[1].approval_records) == 1

    def test_list_filters_status(
        self, db_session, person, document, two_level_workflow
    ) -> None:
        _submit(db_session, document, person)
        result = approval_instances.list_response(
            db_session, None, None, "in_progress", None, "started_at", "desc", 50, 0
        )
        assert result["count"] == 1
        result = approval_instances.list_response(
            db_session, None, None, "approved", None, "started_at", "desc", 50, 0
        )
        assert result["count"] == 0

    def test_metrics(self, db_session, person, approvers, document, two_level_workflow) -> None:
        instance = _submit(db_session, document, person)
        _decide(db_session, instance, 1, approvers[0], action="reject")
        metrics = approval_instances.metrics(db_session)
        assert metrics["total_instances"] == 1
        assert metrics["by_status"]["rejected"] == 1
        assert metrics["rejection_rate"] == 1.0
        assert metrics["escalation_rate"] == 0.0
        assert metrics["average_completion_hours"] is None


class TestConditions:
    def test_condition_operators(self) -> None:
        content = {"total": 10, "tags": ["urgent"], "meta": {"region": "EU"}}
        assert condition_holds({"field": "total", "operator": "less_than", "value": 20}, content)
        assert not condition_holds(
            {"field": "total", "operator": "greater_than", "value": 20}, content
        )
        assert condition_holds(
            {"field": "tags", "operator": "contains", "value": "urgent"}, content
        )
        assert condition_holds(
            {"field": "meta.region", "operator": "equals", "value": "EU"}, content
        )
        assert not condition_holds(
            {"field": "missing", "operator": "less_than", "value": 1}, content
        )
        assert not condition_holds(
            {"field": "meta", "operator": "less_than", "value": 1}, content
        )
