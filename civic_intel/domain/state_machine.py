from __future__ import annotations

from dataclasses import dataclass, field

from civic_intel.domain.errors import InvalidTransition
from civic_intel.domain.states import ALLOWED_TRANSITIONS, ENTRY_EVENTS, ComplaintStatus


@dataclass(frozen=True)
class TransitionOutcome:
    source: ComplaintStatus
    target: ComplaintStatus
    events: tuple[str, ...] = field(default_factory=tuple)


class StateMachine:
    def can_transition(self, current: ComplaintStatus, target: ComplaintStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, set())

    def transition(self, current: ComplaintStatus, target: ComplaintStatus) -> TransitionOutcome:
        if not self.can_transition(current, target):
            raise InvalidTransition(f"Invalid transition {current.value} -> {target.value}")

        events = ["complaint.status.changed"]
        entry_event = ENTRY_EVENTS.get(target)
        if entry_event:
            events.append(entry_event)
        return TransitionOutcome(source=current, target=target, events=tuple(events))
