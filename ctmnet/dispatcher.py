"""Discrete-event dispatcher.

Events are processed in non-decreasing timestamp order.  Events with the same
timestamp are ordered by priority (lower first) and then by registration
order, which keeps replays deterministic.  Each handled event may return the
next event of the same target, which is how recurring updates re-register
themselves; there is no cancellation.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .errors import InvariantViolation


class EventKind(Enum):
    CONTROLLER_POKE = "controller_poke"
    FLUID_FLOW_UPDATE = "fluid_flow_update"
    FLUID_STATE_UPDATE = "fluid_state_update"
    LANE_SELECTOR_UPDATE = "lane_selector_update"
    OUTPUT_SAMPLE = "output_sample"


PRIORITY_CONTROLLER = 0
PRIORITY_FLUID_FLOW_UPDATE = 4
PRIORITY_FLUID_STATE_UPDATE = 5
PRIORITY_LANE_SELECTOR = 5
PRIORITY_OUTPUT = 10


@dataclass(order=True)
class Event:
    timestamp: float
    priority: int
    seq: int
    kind: EventKind = field(compare=False)
    target: Any = field(compare=False)


class Dispatcher:
    """Priority-ordered event queue with a single logical clock.

    Targets implement ``handle(event) -> Optional[Event]``; a returned event
    is pushed back on the queue through :meth:`register_event`.
    """

    def __init__(self, start_time: float = 0.0) -> None:
        self.current_time = float(start_time)
        self._queue: List[Event] = []
        self._counter = itertools.count()

    def register_event(
            self,
            timestamp: float,
            priority: int,
            kind: EventKind,
            target: Any,
    ) -> Event:
        if timestamp < self.current_time:
            raise InvariantViolation(
                f"Event {kind.value} at t={timestamp} registered in the past "
                f"(current time {self.current_time})."
            )
        event = Event(float(timestamp), int(priority), next(self._counter), kind, target)
        heapq.heappush(self._queue, event)
        return event

    def run(self, stop_time: float) -> None:
        """Process every event with ``timestamp <= stop_time``.

        The clock ends at ``stop_time`` even if the last event came earlier.
        """
        while self._queue and self._queue[0].timestamp <= stop_time:
            event = heapq.heappop(self._queue)
            self.current_time = event.timestamp
            follow_up: Optional[Event] = event.target.handle(event)
            if follow_up is not None:
                self.register_event(
                    follow_up.timestamp,
                    follow_up.priority,
                    follow_up.kind,
                    follow_up.target,
                )
        self.current_time = max(self.current_time, float(stop_time))

    def pending(self) -> List[Event]:
        """Queued events in processing order (read-only copy)."""
        return sorted(self._queue)

    def clear(self) -> None:
        self._queue.clear()


__all__ = [
    "Dispatcher",
    "Event",
    "EventKind",
    "PRIORITY_CONTROLLER",
    "PRIORITY_FLUID_FLOW_UPDATE",
    "PRIORITY_FLUID_STATE_UPDATE",
    "PRIORITY_LANE_SELECTOR",
    "PRIORITY_OUTPUT",
]
