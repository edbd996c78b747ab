"""Approval workflow states and transitions.

State Machine Diagram:

    (new record)
         │ submit
         ├──────────────────────────────┐ below threshold
    ┌────▼──────┐                       │
    │ SUBMITTED │───────────┐           │
    └────┬──────┘           │           │
         │ finance_approve  │ reject    │
    ┌────▼────────────┐     │           │
    │ FINANCE_APPROVED│◄────┼───────────┘
    └────┬────────────┘     │
         │ committee_approve│ reject
    ┌────▼──────────────┐ ┌─▼────────┐
    │COMMITTEE_APPROVED │ │ REJECTED │
    └───────────────────┘ └──────────┘

An elevated actor's finance_approve goes from SUBMITTED straight to
COMMITTEE_APPROVED, recording both stages.

DRAFT is reserved: no transition produces or consumes it.
"""

from enum import Enum
from typing import Dict, FrozenSet, NamedTuple, Optional, Set, Union

from fundflow.core.rbac.roles import (
    UserRole,
    FINANCE_ROLES,
    COMMITTEE_ROLES,
    REVIEWER_ROLES,
    ELEVATED_ROLE,
    parse_role,
)


class ApprovalState(str, Enum):
    """States of an approval record."""

    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    FINANCE_APPROVED = "FinanceApproved"

    # Terminal states
    COMMITTEE_APPROVED = "CommitteeApproved"
    REJECTED = "Rejected"


class ApprovalTargetType(str, Enum):
    """Kinds of change that can be put under approval."""

    ESTIMATE_CHANGE = "EstimateChange"
    ACTUAL_ENTRY = "ActualEntry"
    STATUS_CHANGE = "StatusChange"


class ApprovalAction(str, Enum):
    """Actions an actor can take against an approval."""

    SUBMIT = "submit"
    FINANCE_APPROVE = "finance_approve"
    COMMITTEE_APPROVE = "committee_approve"
    REJECT = "reject"


class Effect(str, Enum):
    """Downstream effect on the target object when a record turns terminal."""

    APPLY = "apply"
    REVERT = "revert"


class TransitionRule(NamedTuple):
    """Defines what an action requires and where it leads."""
    action: ApprovalAction
    allowed_roles: FrozenSet[UserRole]
    from_states: FrozenSet[Optional[ApprovalState]]  # None = record does not exist yet
    to_state: ApprovalState
    requires_comment: bool = False
    elevated_to: Optional[ApprovalState] = None  # Where an elevated actor lands instead
    below_threshold_to: Optional[ApprovalState] = None  # Where an auto-passed submit lands


# Who may propose each kind of change
SUBMIT_ROLES: Dict[ApprovalTargetType, FrozenSet[UserRole]] = {
    ApprovalTargetType.ESTIMATE_CHANGE: frozenset({ELEVATED_ROLE, UserRole.PROJECT_MANAGER}),
    ApprovalTargetType.STATUS_CHANGE: frozenset({ELEVATED_ROLE, UserRole.PROJECT_MANAGER}),
    ApprovalTargetType.ACTUAL_ENTRY: frozenset({ELEVATED_ROLE, UserRole.FINANCE}),
}

TRANSITION_RULES: Dict[ApprovalAction, TransitionRule] = {
    ApprovalAction.SUBMIT: TransitionRule(
        ApprovalAction.SUBMIT,
        frozenset().union(*SUBMIT_ROLES.values()),
        frozenset({None}),
        ApprovalState.SUBMITTED,
        below_threshold_to=ApprovalState.FINANCE_APPROVED,
    ),
    ApprovalAction.FINANCE_APPROVE: TransitionRule(
        ApprovalAction.FINANCE_APPROVE,
        FINANCE_ROLES,
        frozenset({ApprovalState.SUBMITTED}),
        ApprovalState.FINANCE_APPROVED,
        elevated_to=ApprovalState.COMMITTEE_APPROVED,
    ),
    ApprovalAction.COMMITTEE_APPROVE: TransitionRule(
        ApprovalAction.COMMITTEE_APPROVE,
        COMMITTEE_ROLES,
        frozenset({ApprovalState.FINANCE_APPROVED}),
        ApprovalState.COMMITTEE_APPROVED,
    ),
    ApprovalAction.REJECT: TransitionRule(
        ApprovalAction.REJECT,
        REVIEWER_ROLES,
        frozenset({ApprovalState.SUBMITTED, ApprovalState.FINANCE_APPROVED}),
        ApprovalState.REJECTED,
        requires_comment=True,
    ),
}

# Effect fired when a record enters a state
STATE_EFFECTS: Dict[ApprovalState, Effect] = {
    ApprovalState.COMMITTEE_APPROVED: Effect.APPLY,
    ApprovalState.REJECTED: Effect.REVERT,
}

TERMINAL_STATES: Set[ApprovalState] = {
    ApprovalState.COMMITTEE_APPROVED,
    ApprovalState.REJECTED,
}

# States awaiting a human decision
PENDING_STATES: Set[ApprovalState] = {
    ApprovalState.SUBMITTED,
    ApprovalState.FINANCE_APPROVED,
}

# Build lookup tables from the rules
# Legal successor of each state in a history (None = empty history)
HISTORY_SUCCESSORS: Dict[Optional[ApprovalState], Set[ApprovalState]] = {None: set()}
for _state in ApprovalState:
    HISTORY_SUCCESSORS[_state] = set()

for _rule in TRANSITION_RULES.values():
    for _from in _rule.from_states:
        HISTORY_SUCCESSORS[_from].add(_rule.to_state)
    for _shortcut in (_rule.elevated_to, _rule.below_threshold_to):
        if _shortcut is not None:
            HISTORY_SUCCESSORS[_rule.to_state].add(_shortcut)

# States each role is expected to act on next
REVIEWABLE_STATES: Dict[UserRole, Set[ApprovalState]] = {role: set() for role in UserRole}
for _action in (ApprovalAction.FINANCE_APPROVE, ApprovalAction.COMMITTEE_APPROVE):
    _rule = TRANSITION_RULES[_action]
    for _role in _rule.allowed_roles:
        REVIEWABLE_STATES[_role].update(s for s in _rule.from_states if s is not None)


def get_rule(action: ApprovalAction) -> TransitionRule:
    """Get the transition rule for an action."""
    return TRANSITION_RULES[action]


def can_transition(from_state: Optional[ApprovalState], action: ApprovalAction) -> bool:
    """Check if an action is legal from the given state."""
    return from_state in TRANSITION_RULES[action].from_states


def is_terminal(state: Optional[ApprovalState]) -> bool:
    return state in TERMINAL_STATES


def allowed_roles_for(
    action: ApprovalAction,
    target_type: Optional[ApprovalTargetType] = None,
) -> FrozenSet[UserRole]:
    """Allow-list for an action; submit is further narrowed by target type."""
    if action == ApprovalAction.SUBMIT and target_type is not None:
        return SUBMIT_ROLES[target_type]
    return TRANSITION_RULES[action].allowed_roles


def reviewable_states(role: Union[str, UserRole, None]) -> Set[ApprovalState]:
    """States whose records are waiting on someone holding ``role``."""
    parsed = parse_role(role)
    if parsed is None:
        return set()
    return set(REVIEWABLE_STATES[parsed])
