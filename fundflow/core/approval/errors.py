"""Errors raised by the approval workflow.

All of these are raised before any state is mutated.
"""

from typing import Optional


class ApprovalError(Exception):
    """Base class for approval workflow errors."""


class NotFoundError(ApprovalError):
    """Raised when an approval or its target object does not exist."""

    def __init__(self, resource: str, resource_id):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class InvalidTransitionError(ApprovalError):
    """Raised when an action is not legal from the current state."""

    def __init__(self, message: str, current_state, action):
        super().__init__(message)
        self.current_state = current_state
        self.action = action


class StaleApprovalError(InvalidTransitionError):
    """Raised when another writer committed a transition first.

    Callers should refetch the approval and retry against the new state.
    """


class UnauthorizedError(ApprovalError):
    """Raised when the actor's role is not in the action's allow-list."""

    def __init__(self, action, role: Optional[str]):
        action_name = getattr(action, "value", action)
        super().__init__(f"Role {role or 'unknown'} may not perform {action_name}")
        self.action = action
        self.role = role


class ValidationError(ApprovalError):
    """Raised when a mandatory field is missing or empty."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class CorruptHistoryError(ApprovalError):
    """Raised when a stored history cannot be replayed to its recorded state."""
