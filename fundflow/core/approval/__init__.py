"""Approval workflow module for fundflow.

Implements the two-stage (Finance, then Committee) approval state machine,
threshold auto-approval and notification fan-out.
"""

from .states import (
    ApprovalState,
    ApprovalTargetType,
    ApprovalAction,
    Effect,
    TRANSITION_RULES,
    TERMINAL_STATES,
)
from .errors import (
    ApprovalError,
    NotFoundError,
    InvalidTransitionError,
    StaleApprovalError,
    UnauthorizedError,
    ValidationError,
    CorruptHistoryError,
)
from .threshold import ThresholdSettings, is_below_threshold
from .history import ApprovalHistory, TransitionEvent, replay
from .machine import ApprovalStateMachine, TransitionOutcome
from .service import ApprovalService

__all__ = [
    "ApprovalState",
    "ApprovalTargetType",
    "ApprovalAction",
    "Effect",
    "TRANSITION_RULES",
    "TERMINAL_STATES",
    "ApprovalError",
    "NotFoundError",
    "InvalidTransitionError",
    "StaleApprovalError",
    "UnauthorizedError",
    "ValidationError",
    "CorruptHistoryError",
    "ThresholdSettings",
    "is_below_threshold",
    "ApprovalHistory",
    "TransitionEvent",
    "replay",
    "ApprovalStateMachine",
    "TransitionOutcome",
    "ApprovalService",
]
