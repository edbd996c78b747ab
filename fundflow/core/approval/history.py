"""Typed, append-only transition history for an approval.

The history is the authoritative audit trail of a record and the only
place the proposed old/new values are kept. The record's current state is
a pure fold over it (see ``replay``).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import CorruptHistoryError
from .states import ApprovalState, HISTORY_SUCCESSORS

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class TransitionEvent:
    """
    One entry in an approval's history, tagged by the state it entered.

    ``old_value``/``new_value`` are only carried by the ``Submitted`` event.
    """
    state: ApprovalState
    actor_id: str
    timestamp: datetime
    comment: Optional[str] = None
    old_value: Optional[float] = None
    new_value: Optional[float] = None

    @property
    def is_system(self) -> bool:
        return self.actor_id == SYSTEM_ACTOR

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "state": self.state.value,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.comment is not None:
            data["comment"] = self.comment
        if self.old_value is not None:
            data["old_value"] = self.old_value
        if self.new_value is not None:
            data["new_value"] = self.new_value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEvent":
        try:
            return cls(
                state=ApprovalState(data["state"]),
                actor_id=str(data["actor_id"]),
                timestamp=datetime.fromisoformat(data["timestamp"]),
                comment=data.get("comment"),
                old_value=_optional_float(data.get("old_value")),
                new_value=_optional_float(data.get("new_value")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptHistoryError(f"Malformed history entry {data!r}: {e}") from e


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def replay(events: Iterable[TransitionEvent]) -> Optional[ApprovalState]:
    """
    Fold a history into the state it leads to.

    Args:
        events: Transition events in insertion order

    Returns:
        The final state, or None for an empty history

    Raises:
        CorruptHistoryError: If an event is not a legal successor of the
            previous state or timestamps go backwards
    """
    state: Optional[ApprovalState] = None
    previous_ts: Optional[datetime] = None
    for event in events:
        if event.state not in HISTORY_SUCCESSORS[state]:
            from_name = state.value if state else "(empty)"
            raise CorruptHistoryError(f"Illegal history step {from_name} -> {event.state.value}")
        if previous_ts is not None and event.timestamp < previous_ts:
            raise CorruptHistoryError(f"History timestamp {event.timestamp.isoformat()} goes backwards")
        state = event.state
        previous_ts = event.timestamp
    return state


class ApprovalHistory:
    """Immutable ordered sequence of transition events."""

    __slots__ = ("_events",)

    def __init__(self, events: Iterable[TransitionEvent] = ()):
        self._events: Tuple[TransitionEvent, ...] = tuple(events)

    def __iter__(self) -> Iterator[TransitionEvent]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index):
        return self._events[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ApprovalHistory):
            return NotImplemented
        return self._events == other._events

    def __repr__(self) -> str:
        return f"<ApprovalHistory {' -> '.join(e.state.value for e in self._events) or '(empty)'}>"

    @property
    def last(self) -> Optional[TransitionEvent]:
        return self._events[-1] if self._events else None

    @property
    def state(self) -> Optional[ApprovalState]:
        """Current state derived by replaying the history."""
        return replay(self._events)

    def append(self, *events: TransitionEvent) -> "ApprovalHistory":
        """Return a new history with ``events`` added at the end."""
        return ApprovalHistory(self._events + tuple(events))

    def submitted_entry(self) -> Optional[TransitionEvent]:
        """The first ``Submitted`` event, holding the proposed old/new values."""
        for event in self._events:
            if event.state == ApprovalState.SUBMITTED:
                return event
        return None

    def to_list(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self._events]

    @classmethod
    def from_list(cls, raw: Optional[List[Dict[str, Any]]]) -> "ApprovalHistory":
        if raw is None:
            return cls()
        if not isinstance(raw, list):
            raise CorruptHistoryError(f"History must be a list, got {type(raw).__name__}")
        return cls(TransitionEvent.from_dict(item) for item in raw)
