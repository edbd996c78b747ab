"""Approval state machine implementation.

Validates actions against the transition table, appends history events and
reports the resulting state and downstream effect. The machine is pure: it
holds no database handle and performs no side effects itself.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union
from uuid import UUID

from fundflow.core.rbac.roles import UserRole, parse_role, has_elevated_authority, is_allowed

from .errors import InvalidTransitionError, UnauthorizedError, ValidationError, CorruptHistoryError
from .history import ApprovalHistory, TransitionEvent, SYSTEM_ACTOR
from .states import (
    ApprovalAction,
    ApprovalState,
    ApprovalTargetType,
    Effect,
    STATE_EFFECTS,
    TERMINAL_STATES,
    allowed_roles_for,
    get_rule,
)
from .threshold import ThresholdSettings, requires_review

AUTO_APPROVE_BELOW_THRESHOLD = "Auto-approved (below threshold)"
AUTO_APPROVE_MULTI_ROLE = "Auto-approved (multi-role user)"

Role = Union[str, UserRole, None]


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of one action against an approval."""
    action: ApprovalAction
    actor_id: str
    from_state: Optional[ApprovalState]
    to_state: ApprovalState
    events: Tuple[TransitionEvent, ...]
    effect: Optional[Effect] = None
    auto_approved: bool = False  # Submit skipped finance review
    elevated: bool = False       # Finance approval also cleared committee
    comment: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.to_state in TERMINAL_STATES


class ApprovalStateMachine:
    """
    State machine for one approval record.

    Every action:
    - checks the actor's role against the action's allow-list
    - checks the current state is a legal from-state
    - checks mandatory fields
    - appends the new events to a fresh history (the old one is untouched)
    """

    def __init__(
        self,
        history: Optional[ApprovalHistory] = None,
        *,
        recorded_state: Optional[Union[str, ApprovalState]] = None,
    ):
        """
        Initialize the state machine.

        Args:
            history: Existing history of the record (empty for a new record)
            recorded_state: State stored alongside the history, checked
                against the replayed history when given

        Raises:
            CorruptHistoryError: If the history does not replay to ``recorded_state``
        """
        self._history = history or ApprovalHistory()
        self._state = self._history.state
        if recorded_state is not None and ApprovalState(recorded_state) != self._state:
            raise CorruptHistoryError(
                f"Recorded state {ApprovalState(recorded_state).value} does not match "
                f"history state {self._state.value if self._state else '(empty)'}"
            )

    @property
    def state(self) -> Optional[ApprovalState]:
        """Current state, None before submit."""
        return self._state

    @property
    def history(self) -> ApprovalHistory:
        return self._history

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal (no further transitions)."""
        return self._state in TERMINAL_STATES

    def can_perform(self, action: ApprovalAction, role: Role) -> bool:
        """Check if an actor with ``role`` could perform ``action`` now."""
        rule = get_rule(action)
        return self._state in rule.from_states and is_allowed(role, rule.allowed_roles)

    def get_available_actions(self, role: Role) -> list[ApprovalAction]:
        return [action for action in ApprovalAction if self.can_perform(action, role)]

    def submit(
        self,
        target_type: ApprovalTargetType,
        actor_id: Union[str, UUID],
        role: Role,
        *,
        old_value: Optional[float] = None,
        new_value: Optional[float] = None,
        comment: Optional[str] = None,
        thresholds: Optional[ThresholdSettings] = None,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """
        Create the initial history of a new record.

        A change below both thresholds is advanced to FinanceApproved by the
        system actor in the same call.
        """
        action = ApprovalAction.SUBMIT
        rule = self._check(action, role, target_type=ApprovalTargetType(target_type))
        now = now or datetime.utcnow()

        events = [
            TransitionEvent(
                state=rule.to_state,
                actor_id=str(actor_id),
                timestamp=now,
                comment=comment,
                old_value=old_value,
                new_value=new_value,
            )
        ]
        auto_approved = not requires_review(old_value, new_value, thresholds or ThresholdSettings())
        if auto_approved:
            events.append(
                TransitionEvent(
                    state=rule.below_threshold_to,
                    actor_id=SYSTEM_ACTOR,
                    timestamp=now,
                    comment=AUTO_APPROVE_BELOW_THRESHOLD,
                )
            )
        return self._commit(action, str(actor_id), events, comment, auto_approved=auto_approved)

    def finance_approve(
        self,
        actor_id: Union[str, UUID],
        role: Role,
        *,
        comment: Optional[str] = None,
        elevated: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """
        Record the finance decision.

        An actor with elevated authority also clears the committee stage,
        appending both events in one call.
        """
        action = ApprovalAction.FINANCE_APPROVE
        rule = self._check(action, role)
        now = now or datetime.utcnow()
        if elevated is None:
            elevated = has_elevated_authority(role)

        events = [TransitionEvent(rule.to_state, str(actor_id), now, comment)]
        if elevated:
            events.append(TransitionEvent(rule.elevated_to, str(actor_id), now, AUTO_APPROVE_MULTI_ROLE))
        return self._commit(action, str(actor_id), events, comment, elevated=elevated)

    def committee_approve(
        self,
        actor_id: Union[str, UUID],
        role: Role,
        *,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        action = ApprovalAction.COMMITTEE_APPROVE
        rule = self._check(action, role)
        event = TransitionEvent(rule.to_state, str(actor_id), now or datetime.utcnow(), comment)
        return self._commit(action, str(actor_id), [event], comment)

    def reject(
        self,
        actor_id: Union[str, UUID],
        role: Role,
        reason: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Reject the change; ``reason`` is mandatory and kept verbatim."""
        action = ApprovalAction.REJECT
        rule = self._check(action, role, comment=reason)
        event = TransitionEvent(rule.to_state, str(actor_id), now or datetime.utcnow(), reason)
        return self._commit(action, str(actor_id), [event], reason)

    def _check(
        self,
        action: ApprovalAction,
        role: Role,
        *,
        target_type: Optional[ApprovalTargetType] = None,
        comment: Optional[str] = None,
    ):
        """Run the role, state and field checks for an action, in that order."""
        rule = get_rule(action)

        if not is_allowed(role, allowed_roles_for(action, target_type)):
            parsed = parse_role(role)
            raise UnauthorizedError(action, parsed.value if parsed else role)

        if self._state not in rule.from_states:
            if self._state is None:
                message = f"Cannot {action.value} an approval that has not been submitted"
            elif action == ApprovalAction.SUBMIT:
                message = f"Approval already submitted (state {self._state.value})"
            else:
                message = f"Cannot {action.value} from state {self._state.value}"
            raise InvalidTransitionError(message, self._state, action)

        if rule.requires_comment and not (comment and comment.strip()):
            raise ValidationError("reason", f"A reason is required to {action.value}")

        return rule

    def _commit(
        self,
        action: ApprovalAction,
        actor_id: str,
        events: list[TransitionEvent],
        comment: Optional[str],
        **flags,
    ) -> TransitionOutcome:
        from_state = self._state
        self._history = self._history.append(*events)
        self._state = events[-1].state
        return TransitionOutcome(
            action=action,
            actor_id=actor_id,
            from_state=from_state,
            to_state=self._state,
            events=tuple(events),
            effect=STATE_EFFECTS.get(self._state),
            comment=comment,
            **flags,
        )
