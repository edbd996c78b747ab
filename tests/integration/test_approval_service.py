"""Integration tests for the approval service.

Runs the full workflow against an in-memory SQLite database:
1. Submit (manual review and below-threshold auto-approval)
2. Finance and committee approval, including elevated authority
3. Rejection with revert of the proposed estimate
4. Atomicity, optimistic locking and audit entries
"""

import asyncio
from collections import Counter
import logging
import uuid

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import text

from fundflow.core.approval import (
    ApprovalHistory,
    ApprovalService,
    ApprovalState,
    ApprovalTargetType,
    CorruptHistoryError,
    InvalidTransitionError,
    NotFoundError,
    StaleApprovalError,
    UnauthorizedError,
    ValidationError,
)
from fundflow.core.config import Settings
from fundflow.db.models import Approval, AuditLog, Notification
from tests.fakes import RecordingNotifier
from tests.factories import create_activity, create_setting, create_user


pytestmark = [pytest.mark.db, pytest.mark.integration]

EST = ApprovalTargetType.ESTIMATE_CHANGE


def deliver(service):
    """Run the queued post-commit notifications."""
    asyncio.run(service.deliver_notifications())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def pm(db_session):
    return create_user(db_session, role="ProjectManager", name="Pat Manager")


@pytest.fixture()
def finance(db_session):
    return create_user(db_session, role="Finance")


@pytest.fixture()
def committee(db_session):
    return create_user(db_session, role="CommitteeMember")


@pytest.fixture()
def admin(db_session):
    return create_user(db_session, role="Admin")


@pytest.fixture()
def activity(db_session):
    """Activity whose estimate was already raised to the proposed 5000."""
    return create_activity(db_session, title="Water Project", estimated_spend_usd_total=5000.0)


@pytest.fixture()
def submitted(approval_service, pm, activity, finance, committee, admin):
    """A material estimate change awaiting finance review."""
    return approval_service.submit(EST, activity.id, pm, old_value=1000.0, new_value=5000.0, comment="Scope grew")


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

class TestSubmit:
    """Test submitting changes."""

    def test_material_change_waits_for_finance(self, approval_service, submitted, notifier, finance, admin):
        assert submitted.current_state == ApprovalState.SUBMITTED.value
        assert len(submitted.history) == 1
        entry = submitted.history[0]
        assert entry["old_value"] == 1000.0
        assert entry["new_value"] == 5000.0
        assert entry["comment"] == "Scope grew"
        assert submitted.version == 1
        deliver(approval_service)
        assert notifier.recipients() == {finance.id, admin.id}

    def test_below_threshold_is_auto_approved(self, approval_service, pm, activity, committee, admin, notifier):
        approval = approval_service.submit(EST, activity.id, pm, old_value=1000.0, new_value=1050.0)

        assert approval.current_state == ApprovalState.FINANCE_APPROVED.value
        assert len(approval.history) == 2
        assert approval.history[1]["actor_id"] == "system"
        assert approval.history[1]["comment"] == "Auto-approved (below threshold)"
        deliver(approval_service)
        assert notifier.recipients() == {committee.id, admin.id}

    def test_thresholds_come_from_system_settings(self, db_session, approval_service, pm, activity):
        create_setting(db_session, "approvalThresholdUsd", 10)
        approval = approval_service.submit(EST, activity.id, pm, old_value=1000.0, new_value=1050.0)
        assert approval.current_state == ApprovalState.SUBMITTED.value

    def test_threshold_defaults(self, approval_service):
        thresholds = approval_service.get_threshold_settings()
        assert thresholds.usd_limit == 5000
        assert thresholds.percent_limit == 10

    def test_non_numeric_threshold_setting_falls_back(self, db_session, approval_service, pm, activity, caplog):
        create_setting(db_session, "approvalThresholdUsd", "abc")
        with caplog.at_level(logging.WARNING, logger="fundflow.core.approval.threshold"):
            thresholds = approval_service.get_threshold_settings()
            approval = approval_service.submit(EST, activity.id, pm, old_value=1000.0, new_value=1050.0)

        assert thresholds.usd_limit == 5000
        assert approval.current_state == ApprovalState.FINANCE_APPROVED.value
        assert any("abc" in r.getMessage() for r in caplog.records)

    def test_unknown_activity(self, db_session, approval_service, pm):
        with pytest.raises(NotFoundError):
            approval_service.submit(EST, uuid.uuid4(), pm, old_value=1.0, new_value=2.0)
        assert db_session.query(Approval).count() == 0

    def test_role_gate(self, db_session, approval_service, finance, activity):
        with pytest.raises(UnauthorizedError):
            approval_service.submit(EST, activity.id, finance, old_value=1.0, new_value=2.0)
        assert db_session.query(Approval).count() == 0
        assert db_session.query(AuditLog).count() == 0

    def test_actual_entry_by_finance(self, approval_service, finance, activity):
        approval = approval_service.submit(ApprovalTargetType.ACTUAL_ENTRY, activity.id, finance)
        assert approval.target_type == "ActualEntry"
        assert approval.current_state == ApprovalState.SUBMITTED.value


# ---------------------------------------------------------------------------
# Review decisions
# ---------------------------------------------------------------------------

class TestReview:
    """Test finance and committee decisions."""

    def test_two_stage_approval(self, approval_service, submitted, finance, committee, pm, notifier):
        approval = approval_service.finance_approve(submitted.id, finance, comment="Budget ok")
        assert approval.current_state == ApprovalState.FINANCE_APPROVED.value
        assert approval.finance_approved_by == finance.id
        assert approval.finance_comment == "Budget ok"
        assert approval.committee_approved_at is None

        deliver(approval_service)
        notifier.in_app.clear()
        approval = approval_service.committee_approve(submitted.id, committee, comment="Agreed")
        assert approval.current_state == ApprovalState.COMMITTEE_APPROVED.value
        assert approval.committee_approved_by == committee.id
        assert approval.committee_comment == "Agreed"
        assert [h["state"] for h in approval.history] == ["Submitted", "FinanceApproved", "CommitteeApproved"]
        assert ApprovalHistory.from_list(approval.history).state == ApprovalState(approval.current_state)
        deliver(approval_service)
        assert notifier.recipients() == {pm.id}

    def test_finance_approval_notifies_other_committee_members(self, approval_service, submitted, finance, committee, admin, notifier):
        deliver(approval_service)
        notifier.in_app.clear()
        approval_service.finance_approve(submitted.id, finance)
        deliver(approval_service)
        assert notifier.recipients() == {committee.id, admin.id}

    def test_elevated_finance_approval_completes(self, approval_service, submitted, admin, pm, activity, notifier, caplog):
        deliver(approval_service)
        notifier.in_app.clear()
        with caplog.at_level(logging.INFO, logger="fundflow.core.approval.service"):
            approval = approval_service.finance_approve(submitted.id, admin, comment="Fine")

        applied = [r for r in caplog.records if "has been approved" in r.getMessage()]
        assert len(applied) == 1
        assert len(approval.history) == 3

        assert approval.current_state == ApprovalState.COMMITTEE_APPROVED.value
        assert approval.finance_approved_by == admin.id
        assert approval.committee_approved_by == admin.id
        assert approval.finance_approved_at is not None
        assert approval.finance_approved_at == approval.committee_approved_at
        assert approval.history[-1]["comment"] == "Auto-approved (multi-role user)"
        assert activity.estimated_spend_usd_total == 5000.0
        deliver(approval_service)
        assert notifier.recipients() == {pm.id}

    def test_committee_before_finance_is_invalid(self, db_session, approval_service, submitted, committee):
        with pytest.raises(InvalidTransitionError) as exc_info:
            approval_service.committee_approve(submitted.id, committee)

        assert exc_info.value.current_state == ApprovalState.SUBMITTED
        db_session.refresh(submitted)
        assert submitted.current_state == ApprovalState.SUBMITTED.value
        assert len(submitted.history) == 1

    def test_unauthorized_reviewer(self, approval_service, submitted, pm):
        with pytest.raises(UnauthorizedError):
            approval_service.finance_approve(submitted.id, pm)

    def test_inactive_reviewer_is_unauthorized(self, db_session, approval_service, submitted):
        retired = create_user(db_session, role="Finance", is_active=False)
        with pytest.raises(UnauthorizedError):
            approval_service.finance_approve(submitted.id, retired)

    def test_unknown_approval(self, approval_service, finance):
        with pytest.raises(NotFoundError):
            approval_service.finance_approve(uuid.uuid4(), finance)


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------

class TestReject:
    """Test rejection and the revert of the proposed estimate."""

    def test_reject_reverts_estimate(self, db_session, approval_service, submitted, finance, pm, activity, notifier):
        deliver(approval_service)
        notifier.in_app.clear()
        approval = approval_service.reject(submitted.id, finance, "Too expensive")

        assert approval.current_state == ApprovalState.REJECTED.value
        assert approval.rejected_by == finance.id
        assert approval.rejection_reason == "Too expensive"
        db_session.refresh(activity)
        assert activity.estimated_spend_usd_total == 1000.0
        deliver(approval_service)
        assert notifier.recipients() == {pm.id}
        assert notifier.in_app[0]["message"] == "Your estimate change was rejected: Too expensive"

    def test_reject_after_finance(self, db_session, approval_service, submitted, finance, committee, activity):
        approval_service.finance_approve(submitted.id, finance)
        with pytest.raises(ValidationError):
            approval_service.reject(submitted.id, committee, "")
        approval = approval_service.reject(submitted.id, committee, "Not this year")

        assert approval.current_state == ApprovalState.REJECTED.value
        db_session.refresh(activity)
        assert activity.estimated_spend_usd_total == 1000.0

    @pytest.mark.parametrize("reason", [None, "", "  "])
    def test_reason_required(self, db_session, approval_service, submitted, finance, activity, reason):
        with pytest.raises(ValidationError):
            approval_service.reject(submitted.id, finance, reason)

        db_session.refresh(submitted)
        assert submitted.current_state == ApprovalState.SUBMITTED.value
        assert activity.estimated_spend_usd_total == 5000.0
        assert db_session.query(AuditLog).count() == 1

    def test_non_estimate_targets_are_not_reverted(self, db_session, approval_service, pm, finance, activity):
        approval = approval_service.submit(ApprovalTargetType.STATUS_CHANGE, activity.id, pm)
        approval_service.reject(approval.id, finance, "No")

        db_session.refresh(activity)
        assert activity.estimated_spend_usd_total == 5000.0

    def test_terminal_record_cannot_be_rejected(self, approval_service, submitted, admin, finance):
        approval_service.finance_approve(submitted.id, admin)
        with pytest.raises(InvalidTransitionError):
            approval_service.reject(submitted.id, finance, "Too late")


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------

class TestBookkeeping:
    """Test audit entries, locking and notification isolation."""

    def test_audit_entries(self, db_session, approval_service, pm, finance, committee, activity):
        approval = approval_service.submit(
            EST, activity.id, pm, old_value=1000.0, new_value=5000.0, ip_address="10.0.0.1",
        )
        approval_service.finance_approve(approval.id, finance, comment="ok")
        approval_service.committee_approve(approval.id, committee)

        entries = db_session.query(AuditLog).all()
        assert Counter(e.action for e in entries) == {"create": 1, "update": 2}
        assert {e.actor_role for e in entries} == {"ProjectManager", "Finance", "CommitteeMember"}
        assert all(e.object_type == "Approval" and e.object_id == str(approval.id) for e in entries)

        created = next(e for e in entries if e.action == "create")
        assert created.ip_address == "10.0.0.1"
        assert created.new_values["below_threshold"] is False

        finance_entry = next(e for e in entries if e.actor_id == finance.id)
        assert finance_entry.previous_values == {"current_state": "Submitted"}
        assert finance_entry.new_values["current_state"] == "FinanceApproved"

    def test_version_increments(self, approval_service, submitted, finance):
        approval = approval_service.finance_approve(submitted.id, finance)
        assert approval.version == 2

    def test_concurrent_writer_loses(self, db_session, approval_service, submitted, finance, monkeypatch):
        load = approval_service._load_for_update

        def racing_load(approval_id):
            approval, machine = load(approval_id)
            db_session.execute(
                text("UPDATE approvals SET version = version + 1 WHERE id = :id"),
                {"id": approval.id.hex},
            )
            return approval, machine

        monkeypatch.setattr(approval_service, "_load_for_update", racing_load)
        with pytest.raises(StaleApprovalError):
            approval_service.finance_approve(submitted.id, finance)

        db_session.refresh(submitted)
        assert submitted.current_state == ApprovalState.SUBMITTED.value

    def test_corrupt_history_is_detected(self, db_session, approval_service, submitted, committee):
        db_session.execute(
            text("UPDATE approvals SET current_state = 'FinanceApproved' WHERE id = :id"),
            {"id": submitted.id.hex},
        )
        db_session.commit()
        db_session.expire_all()

        with pytest.raises(CorruptHistoryError):
            approval_service.committee_approve(submitted.id, committee)

    def test_notification_failures_do_not_fail_actions(self, db_session, settings, pm, finance, activity):
        service = ApprovalService(
            db_session,
            notifier=RecordingNotifier(fail_in_app=True, fail_email=True),
            settings=settings,
        )
        approval = service.submit(EST, activity.id, pm, old_value=1000.0, new_value=5000.0)
        approval = service.reject(approval.id, finance, "No")
        deliver(service)
        assert approval.current_state == ApprovalState.REJECTED.value
        assert service.outbox == []

    def test_actions_queue_notifications_until_delivered(self, approval_service, submitted, finance, notifier):
        approval_service.finance_approve(submitted.id, finance)

        assert notifier.in_app == []
        assert notifier.emails == []
        assert len(approval_service.outbox) == 2

        deliver(approval_service)
        assert approval_service.outbox == []
        assert finance.id in notifier.recipients()

    def test_smtp_is_not_awaited_inside_actions(self, db_session, pm, finance, activity):
        settings = Settings(
            email_notifications_enabled=True,
            smtp_host="smtp.test",
            frontend_url="http://fundflow.test",
        )
        service = ApprovalService(db_session, settings=settings)

        with patch("fundflow.services.notifications.aiosmtplib.send", new_callable=AsyncMock) as send:
            approval = service.submit(EST, activity.id, pm, old_value=1000.0, new_value=5000.0)
            assert approval.current_state == ApprovalState.SUBMITTED.value
            send.assert_not_awaited()

            deliver(service)

        send.assert_awaited_once()
        assert send.call_args.kwargs["recipients"] == [finance.email]

    def test_default_notifier_writes_in_app_rows(self, db_session, settings, pm, finance, admin, activity):
        service = ApprovalService(db_session, settings=settings)
        service.submit(EST, activity.id, pm, old_value=1000.0, new_value=5000.0)
        deliver(service)

        rows = db_session.query(Notification).all()
        assert {r.user_id for r in rows} == {finance.id, admin.id}
        assert all(r.link.startswith("/approvals/") for r in rows)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    """Test listing and lookup."""

    def test_get_by_id(self, approval_service, submitted):
        assert approval_service.get_by_id(submitted.id).id == submitted.id
        with pytest.raises(NotFoundError):
            approval_service.get_by_id(uuid.uuid4())

    def test_list_filters(self, approval_service, submitted, pm, finance, activity):
        other = approval_service.submit(ApprovalTargetType.ACTUAL_ENTRY, activity.id, finance)

        assert {a.id for a in approval_service.list_approvals()} == {submitted.id, other.id}
        assert [a.id for a in approval_service.list_approvals(target_type=EST)] == [submitted.id]
        assert [a.id for a in approval_service.list_approvals(submitted_by=finance.id)] == [other.id]
        assert len(approval_service.list_approvals(target_id=activity.id)) == 2
        assert approval_service.list_approvals(state=ApprovalState.REJECTED) == []

    def test_list_pending_for(self, approval_service, submitted, pm, activity, finance, committee, admin):
        auto = approval_service.submit(EST, activity.id, pm, old_value=1000.0, new_value=1050.0)

        assert [a.id for a in approval_service.list_pending_for(finance)] == [submitted.id]
        assert [a.id for a in approval_service.list_pending_for(committee)] == [auto.id]
        assert {a.id for a in approval_service.list_pending_for(admin)} == {submitted.id, auto.id}
        assert approval_service.list_pending_for(pm) == []

    def test_list_is_paginated_in_the_query(self, approval_service, submitted, pm, activity):
        second = approval_service.submit(EST, activity.id, pm, old_value=5000.0, new_value=9000.0)
        third = approval_service.submit(EST, activity.id, pm, old_value=9000.0, new_value=14000.0)

        assert approval_service.count_approvals() == 3
        assert approval_service.count_approvals(target_type=ApprovalTargetType.ACTUAL_ENTRY) == 0
        page_one = approval_service.list_approvals(offset=0, limit=2)
        page_two = approval_service.list_approvals(offset=2, limit=2)
        assert len(page_one) == 2
        assert len(page_two) == 1
        assert {a.id for a in page_one + page_two} == {submitted.id, second.id, third.id}

    def test_pending_is_paginated_in_the_query(self, approval_service, submitted, pm, activity, finance):
        approval_service.submit(EST, activity.id, pm, old_value=5000.0, new_value=9000.0)

        assert approval_service.count_pending_for(finance) == 2
        assert len(approval_service.list_pending_for(finance, offset=1, limit=5)) == 1
        assert approval_service.count_pending_for(pm) == 0
