"""Approval service for managing activity change approvals.

Provides the high-level API around the approval state machine: persistence,
audit logging, downstream effects on the target activity and notification
fan-out.

Each action is one unit of work. The approval row, its history, any revert
of the target and the audit entry are committed together or not at all.
Notifications are planned after the commit and queued in ``outbox``;
``deliver_notifications`` sends them later (the HTTP layer runs it as a
background task) and never fails the action.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, TYPE_CHECKING
from uuid import UUID

from sqlalchemy.orm import Query, Session
from sqlalchemy.orm.exc import StaleDataError

from fundflow.core.config import Settings, get_settings
from fundflow.core.rbac import RoleChecker, UserDirectory, UserRole
from fundflow.db.models import Activity, Approval, AuditLog, SystemSetting, User

from .errors import NotFoundError, StaleApprovalError, UnauthorizedError
from .fanout import ApprovalContext, NotificationPlan, plan_notifications
from .history import ApprovalHistory
from .machine import ApprovalStateMachine, TransitionOutcome
from .states import (
    ApprovalAction,
    ApprovalState,
    ApprovalTargetType,
    Effect,
    reviewable_states,
)
from .threshold import ThresholdSettings, USD_LIMIT_KEY, PERCENT_LIMIT_KEY

if TYPE_CHECKING:
    from fundflow.services.notifications import Notifier

logger = logging.getLogger(__name__)

APPROVAL_OBJECT_TYPE = "Approval"


class ApprovalService:
    """
    High-level service for the two-stage approval workflow.

    Handles:
    - Submitting changes (with threshold auto-approval)
    - Finance and committee approval, rejection
    - Querying approvals and pending work per role
    """

    def __init__(
        self,
        db: Session,
        *,
        notifier: Optional["Notifier"] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the approval service.

        Args:
            db: Database session
            notifier: Notification delivery; defaults to the database/SMTP notifier
            settings: Application settings
        """
        self.db = db
        self.settings = settings or get_settings()
        if notifier is None:
            from fundflow.services.notifications import NotificationService
            notifier = NotificationService(db, self.settings)
        self.notifier = notifier
        self.outbox: List[NotificationPlan] = []
        self.directory = UserDirectory(db)
        self.roles = RoleChecker(self.directory)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def submit(
        self,
        target_type: ApprovalTargetType,
        target_id: UUID,
        actor: User,
        *,
        old_value: Optional[float] = None,
        new_value: Optional[float] = None,
        comment: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Approval:
        """
        Submit a change for review.

        Returns:
            The new approval, in Submitted or (below threshold) FinanceApproved

        Raises:
            NotFoundError: If the target activity does not exist
            UnauthorizedError: If the actor may not propose this kind of change
        """
        target_type = ApprovalTargetType(target_type)
        with self._unit_of_work():
            role = self._require_role(actor, ApprovalAction.SUBMIT)
            activity = self.db.get(Activity, target_id)
            if not activity:
                raise NotFoundError("Activity", target_id)

            machine = ApprovalStateMachine()
            outcome = machine.submit(
                target_type,
                actor.id,
                role,
                old_value=old_value,
                new_value=new_value,
                comment=comment,
                thresholds=self.get_threshold_settings(),
            )

            approval = Approval(
                target_type=target_type.value,
                target_id=target_id,
                current_state=outcome.to_state.value,
                submitted_by=actor.id,
                submitted_at=outcome.events[0].timestamp,
                history=machine.history.to_list(),
            )
            self.db.add(approval)
            self.db.flush()

            self._audit(
                actor,
                role,
                "create",
                approval,
                new_values={
                    "target_type": target_type.value,
                    "target_id": str(target_id),
                    "current_state": outcome.to_state.value,
                    "below_threshold": outcome.auto_approved,
                },
                ip_address=ip_address,
            )

        logger.info(
            "Approval %s submitted for %s %s by %s -> %s",
            approval.id, target_type.value, target_id, actor.id, outcome.to_state.value,
        )
        self._notify(approval, outcome, activity)
        return approval

    def finance_approve(
        self,
        approval_id: UUID,
        actor: User,
        *,
        comment: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Approval:
        """
        Record the finance decision.

        An elevated actor clears both stages and the change is applied.
        """
        with self._unit_of_work():
            role = self._require_role(actor, ApprovalAction.FINANCE_APPROVE)
            approval, machine = self._load_for_update(approval_id)
            outcome = machine.finance_approve(
                actor.id,
                role,
                comment=comment,
                elevated=self.roles.has_elevated_authority(actor.id),
            )

            now = outcome.events[-1].timestamp
            approval.finance_approved_by = actor.id
            approval.finance_approved_at = now
            approval.finance_comment = comment
            if outcome.elevated:
                approval.committee_approved_by = actor.id
                approval.committee_approved_at = now

            activity = self._record_transition(
                approval, machine, outcome, actor, role,
                new_values={"current_state": outcome.to_state.value, "finance_comment": comment},
                ip_address=ip_address,
            )

        self._after_commit(approval, outcome, actor, activity)
        return approval

    def committee_approve(
        self,
        approval_id: UUID,
        actor: User,
        *,
        comment: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Approval:
        with self._unit_of_work():
            role = self._require_role(actor, ApprovalAction.COMMITTEE_APPROVE)
            approval, machine = self._load_for_update(approval_id)
            outcome = machine.committee_approve(actor.id, role, comment=comment)

            approval.committee_approved_by = actor.id
            approval.committee_approved_at = outcome.events[-1].timestamp
            approval.committee_comment = comment

            activity = self._record_transition(
                approval, machine, outcome, actor, role,
                new_values={"current_state": outcome.to_state.value, "committee_comment": comment},
                ip_address=ip_address,
            )

        self._after_commit(approval, outcome, actor, activity)
        return approval

    def reject(
        self,
        approval_id: UUID,
        actor: User,
        reason: Optional[str],
        *,
        ip_address: Optional[str] = None,
    ) -> Approval:
        """
        Reject a pending approval and revert the proposed change.

        Raises:
            ValidationError: If ``reason`` is missing or blank
        """
        with self._unit_of_work():
            role = self._require_role(actor, ApprovalAction.REJECT)
            approval, machine = self._load_for_update(approval_id)
            outcome = machine.reject(actor.id, role, reason)

            approval.rejected_by = actor.id
            approval.rejected_at = outcome.events[-1].timestamp
            approval.rejection_reason = reason

            activity = self._record_transition(
                approval, machine, outcome, actor, role,
                new_values={"current_state": outcome.to_state.value, "rejection_reason": reason},
                ip_address=ip_address,
            )

        self._after_commit(approval, outcome, actor, activity)
        return approval

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, approval_id: UUID) -> Approval:
        approval = self.db.get(Approval, approval_id)
        if not approval:
            raise NotFoundError("Approval", approval_id)
        return approval

    def list_approvals(
        self,
        *,
        state: Optional[ApprovalState] = None,
        target_type: Optional[ApprovalTargetType] = None,
        target_id: Optional[UUID] = None,
        submitted_by: Optional[UUID] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Approval]:
        """List approvals matching all given filters, newest first."""
        query = self._filtered(state, target_type, target_id, submitted_by)
        return self._window(query.order_by(Approval.created_at.desc(), Approval.id), offset, limit)

    def count_approvals(
        self,
        *,
        state: Optional[ApprovalState] = None,
        target_type: Optional[ApprovalTargetType] = None,
        target_id: Optional[UUID] = None,
        submitted_by: Optional[UUID] = None,
    ) -> int:
        return self._filtered(state, target_type, target_id, submitted_by).count()

    def list_pending_for(self, actor: User, *, offset: int = 0, limit: Optional[int] = None) -> List[Approval]:
        """Approvals waiting on the actor's role, newest first."""
        query = self._pending_query(actor)
        if query is None:
            return []
        return self._window(query.order_by(Approval.created_at.desc(), Approval.id), offset, limit)

    def count_pending_for(self, actor: User) -> int:
        query = self._pending_query(actor)
        return query.count() if query is not None else 0

    def get_threshold_settings(self) -> ThresholdSettings:
        """Thresholds from system settings, defaulting to the configured values."""
        rows = self.db.query(SystemSetting).filter(
            SystemSetting.key.in_([USD_LIMIT_KEY, PERCENT_LIMIT_KEY])
        ).all()
        values = {row.key: row.value for row in rows}
        defaults = ThresholdSettings(
            usd_limit=self.settings.approval_threshold_usd,
            percent_limit=self.settings.approval_threshold_percent,
        )
        return ThresholdSettings.from_values(
            values.get(USD_LIMIT_KEY),
            values.get(PERCENT_LIMIT_KEY),
            defaults=defaults,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _filtered(
        self,
        state: Optional[ApprovalState],
        target_type: Optional[ApprovalTargetType],
        target_id: Optional[UUID],
        submitted_by: Optional[UUID],
    ) -> Query:
        query = self.db.query(Approval)
        if state:
            query = query.filter(Approval.current_state == ApprovalState(state).value)
        if target_type:
            query = query.filter(Approval.target_type == ApprovalTargetType(target_type).value)
        if target_id:
            query = query.filter(Approval.target_id == target_id)
        if submitted_by:
            query = query.filter(Approval.submitted_by == submitted_by)
        return query

    def _pending_query(self, actor: User) -> Optional[Query]:
        states = reviewable_states(self.roles.role_of(actor.id))
        if not states:
            return None
        return self.db.query(Approval).filter(
            Approval.current_state.in_([s.value for s in states])
        )

    @staticmethod
    def _window(query: Query, offset: int, limit: Optional[int]) -> List[Approval]:
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def _require_role(self, actor: User, action: ApprovalAction) -> UserRole:
        role = self.roles.role_of(actor.id)
        if role is None:
            raise UnauthorizedError(action, getattr(actor, "role", None))
        return role

    def _load_for_update(self, approval_id: UUID) -> Tuple[Approval, ApprovalStateMachine]:
        approval = self.db.query(Approval).filter(
            Approval.id == approval_id
        ).with_for_update().first()
        if not approval:
            raise NotFoundError("Approval", approval_id)

        machine = ApprovalStateMachine(
            ApprovalHistory.from_list(approval.history),
            recorded_state=approval.current_state,
        )
        return approval, machine

    def _record_transition(
        self,
        approval: Approval,
        machine: ApprovalStateMachine,
        outcome: TransitionOutcome,
        actor: User,
        role: UserRole,
        *,
        new_values: Dict[str, Any],
        ip_address: Optional[str],
    ) -> Optional[Activity]:
        """Write the new state and history, run the downstream effect and audit it."""
        approval.current_state = outcome.to_state.value
        approval.history = machine.history.to_list()
        approval.updated_at = datetime.utcnow()

        activity = self.db.get(Activity, approval.target_id)
        self._apply_effect(approval, machine.history, outcome.effect, activity)

        self._audit(
            actor,
            role,
            "update",
            approval,
            previous_values={"current_state": outcome.from_state.value},
            new_values=new_values,
            ip_address=ip_address,
        )
        return activity

    def _after_commit(
        self,
        approval: Approval,
        outcome: TransitionOutcome,
        actor: User,
        activity: Optional[Activity],
    ) -> None:
        logger.info(
            "Approval %s: %s by %s (%s -> %s)",
            approval.id, outcome.action.value, actor.id, outcome.from_state.value, outcome.to_state.value,
        )
        self._notify(approval, outcome, activity)

    def _apply_effect(
        self,
        approval: Approval,
        history: ApprovalHistory,
        effect: Optional[Effect],
        activity: Optional[Activity],
    ) -> None:
        """Confirm or undo the change on the target; only estimate changes have one."""
        if effect is None or approval.target_type != ApprovalTargetType.ESTIMATE_CHANGE.value:
            return

        submitted = history.submitted_entry()
        if effect == Effect.APPLY:
            # The new value was written when the change was proposed
            if submitted and submitted.new_value is not None:
                logger.info(
                    "Approval %s: estimate change for activity %s from %s to %s has been approved",
                    approval.id, approval.target_id, submitted.old_value, submitted.new_value,
                )
            return

        if submitted is None or submitted.old_value is None:
            return
        if activity is None:
            raise NotFoundError("Activity", approval.target_id)
        activity.estimated_spend_usd_total = submitted.old_value
        logger.info(
            "Approval %s: reverted activity %s estimate from %s back to %s",
            approval.id, approval.target_id, submitted.new_value, submitted.old_value,
        )

    def _audit(
        self,
        actor: User,
        role: UserRole,
        action: str,
        approval: Approval,
        *,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        self.db.add(AuditLog.create_entry(
            action,
            APPROVAL_OBJECT_TYPE,
            actor_id=actor.id,
            actor_role=role.value,
            object_id=approval.id,
            previous_values=previous_values,
            new_values=new_values,
            ip_address=ip_address,
        ))

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        """Commit the block as one transaction; roll back on any error."""
        try:
            yield
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleApprovalError(
                "Approval was modified concurrently; refetch and retry",
                None,
                None,
            ) from e
        except Exception:
            self.db.rollback()
            raise

    def _notify(self, approval: Approval, outcome: TransitionOutcome, activity: Optional[Activity]) -> None:
        try:
            submitter = self.directory.get(approval.submitted_by)
            context = ApprovalContext(
                approval_id=approval.id,
                target_type=ApprovalTargetType(approval.target_type),
                submitted_by=approval.submitted_by,
                activity_title=activity.title if activity else "Activity",
                activity_sn=str(activity.sn) if activity else "",
                estimated_spend=activity.estimated_spend_usd_total if activity else None,
                submitter_name=(submitter.full_name if submitter and submitter.full_name else "User"),
                frontend_url=self.settings.frontend_url,
            )
            plan = plan_notifications(outcome, context, self.directory)
        except Exception:
            logger.exception("Failed to plan notifications for approval %s", approval.id)
            return
        if plan:
            self.outbox.append(plan)

    async def deliver_notifications(self) -> None:
        """Send every queued notification plan. Never raises."""
        while self.outbox:
            plan = self.outbox.pop(0)
            try:
                await self.notifier.dispatch(plan)
            except Exception:
                logger.exception("Failed to deliver notifications to %s", plan.recipient_ids)
