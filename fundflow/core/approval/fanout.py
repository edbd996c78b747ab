"""Notification fan-out for approval transitions.

Decides who hears about a transition and what they are told. Delivery is
left to a ``Notifier`` (see ``fundflow.services.notifications``).

| Transition                         | Recipients                                 |
|------------------------------------|--------------------------------------------|
| Submitted (needs review)           | Finance + Admin users, minus the submitter |
| Auto-approved at submit            | Committee + Admin users                    |
| Finance-approved (non-elevated)    | Committee + Admin users, minus the approver|
| CommitteeApproved (either path)    | The submitter                              |
| Rejected                           | The submitter, with the reason             |
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from fundflow.core.rbac.directory import UserDirectory
from fundflow.core.rbac.roles import FINANCE_ROLES, COMMITTEE_ROLES
from fundflow.db.models.notification import NotificationType

from .machine import TransitionOutcome
from .states import ApprovalAction, ApprovalState, ApprovalTargetType

TARGET_LABELS = {
    ApprovalTargetType.ESTIMATE_CHANGE: "estimate change",
    ApprovalTargetType.ACTUAL_ENTRY: "actual entry",
    ApprovalTargetType.STATUS_CHANGE: "status change",
}

# Email template names understood by the notifier
TEMPLATE_SUBMITTED = "approval_submitted"
TEMPLATE_FINANCE_APPROVED = "approval_finance_approved"
TEMPLATE_APPROVED = "approval_approved"
TEMPLATE_REJECTED = "approval_rejected"


def approval_link(approval_id) -> str:
    return f"/approvals/{approval_id}"


@dataclass(frozen=True)
class ApprovalContext:
    """Descriptive data about an approval used to word its notifications."""
    approval_id: UUID
    target_type: ApprovalTargetType
    submitted_by: Optional[UUID]
    activity_title: str = "Activity"
    activity_sn: str = ""
    estimated_spend: Optional[float] = None
    submitter_name: str = "User"
    frontend_url: str = ""

    @property
    def target_label(self) -> str:
        return TARGET_LABELS.get(self.target_type, "change")

    @property
    def link(self) -> str:
        return approval_link(self.approval_id)

    @property
    def approval_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}{self.link}"


@dataclass(frozen=True)
class NotificationMessage:
    """An in-app notification for one user."""
    user_id: UUID
    category: str
    title: str
    body: str
    link: str


@dataclass
class NotificationPlan:
    """Everything to deliver for one transition."""
    messages: List[NotificationMessage] = field(default_factory=list)
    email_template: Optional[str] = None
    email_variables: Dict[str, Any] = field(default_factory=dict)
    email_recipients: List[Tuple[UUID, str]] = field(default_factory=list)  # (user id, address)

    @property
    def recipient_ids(self) -> List[UUID]:
        return [m.user_id for m in self.messages]

    def __bool__(self) -> bool:
        return bool(self.messages or self.email_recipients)


def _format_spend(amount: Optional[float]) -> str:
    return f"${amount or 0:,.2f}"


def _email_variables(context: ApprovalContext, actor_name: str, **extra: Any) -> Dict[str, Any]:
    variables = {
        "activity_title": context.activity_title,
        "activity_sn": context.activity_sn,
        "actor_name": actor_name,
        "estimated_spend": _format_spend(context.estimated_spend),
        "approval_url": context.approval_url,
        "target_label": context.target_label,
    }
    variables.update(extra)
    return variables


def _plan_for_users(
    users,
    context: ApprovalContext,
    *,
    category: str,
    title: str,
    body: str,
    template: str,
    variables: Dict[str, Any],
) -> NotificationPlan:
    return NotificationPlan(
        messages=[NotificationMessage(u.id, category, title, body, context.link) for u in users],
        email_template=template,
        email_variables=variables,
        email_recipients=[(u.id, u.email) for u in users if u.email],
    )


def plan_notifications(
    outcome: TransitionOutcome,
    context: ApprovalContext,
    directory: UserDirectory,
) -> NotificationPlan:
    """
    Compute recipients and messages for a transition outcome.

    Args:
        outcome: Result returned by the state machine
        context: Wording data for the approval
        directory: User lookup for role groups and the submitter

    Returns:
        The plan to hand to a notifier (empty if nobody is to be told)
    """
    if outcome.to_state == ApprovalState.COMMITTEE_APPROVED:
        submitter = directory.get(context.submitted_by)
        actor_name = "Finance Team" if outcome.action == ApprovalAction.FINANCE_APPROVE else "Committee"
        return _plan_for_users(
            [submitter] if submitter else [],
            context,
            category=NotificationType.APPROVAL_DECISION.value,
            title="Approval Completed",
            body=f"Your {context.target_label} has been fully approved",
            template=TEMPLATE_APPROVED,
            variables=_email_variables(context, actor_name),
        )

    if outcome.to_state == ApprovalState.REJECTED:
        submitter = directory.get(context.submitted_by)
        return _plan_for_users(
            [submitter] if submitter else [],
            context,
            category=NotificationType.APPROVAL_DECISION.value,
            title="Approval Rejected",
            body=f"Your {context.target_label} was rejected: {outcome.comment}",
            template=TEMPLATE_REJECTED,
            variables=_email_variables(context, "Approver", reason=outcome.comment),
        )

    if outcome.to_state == ApprovalState.SUBMITTED:
        users = directory.users_with_roles(FINANCE_ROLES, exclude=context.submitted_by)
        return _plan_for_users(
            users,
            context,
            category=NotificationType.APPROVAL_SUBMITTED.value,
            title="New Approval Request",
            body=f"{context.submitter_name} submitted {context.target_label} for {context.activity_title}",
            template=TEMPLATE_SUBMITTED,
            variables=_email_variables(context, context.submitter_name),
        )

    if outcome.to_state == ApprovalState.FINANCE_APPROVED:
        if outcome.auto_approved:
            users = directory.users_with_roles(COMMITTEE_ROLES)
            actor_name = "System (below threshold)"
        else:
            users = directory.users_with_roles(COMMITTEE_ROLES, exclude=_as_uuid(outcome.actor_id))
            actor_name = "Finance Team"
        return _plan_for_users(
            users,
            context,
            category=NotificationType.APPROVAL_SUBMITTED.value,
            title="Approval Awaiting Committee Review",
            body=f"{context.target_label.capitalize()} for {context.activity_title} requires committee approval",
            template=TEMPLATE_FINANCE_APPROVED,
            variables=_email_variables(context, actor_name),
        )

    return NotificationPlan()


def _as_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None
