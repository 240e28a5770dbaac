"""Unit tests for the discrete-event dispatcher."""

import unittest

from ctmnet.dispatcher import (
    PRIORITY_FLUID_FLOW_UPDATE,
    PRIORITY_FLUID_STATE_UPDATE,
    PRIORITY_OUTPUT,
    Dispatcher,
    Event,
    EventKind,
)
from ctmnet.errors import InvariantViolation


class Recorder:
    """Target that logs every event it handles and optionally repeats."""

    def __init__(self, name, log, repeat_dt=None):
        self.name = name
        self.log = log
        self.repeat_dt = repeat_dt

    def handle(self, event):
        self.log.append((event.timestamp, self.name))
        if self.repeat_dt is None:
            return None
        return Event(event.timestamp + self.repeat_dt, event.priority, -1, event.kind, self)


class TestDispatcher(unittest.TestCase):
    """Test event ordering and the simulation clock."""

    def test_order_by_time_priority_and_registration(self):
        """Test that ties are broken by priority, then by registration order."""
        log = []
        dispatcher = Dispatcher()
        dispatcher.register_event(2.0, PRIORITY_OUTPUT, EventKind.OUTPUT_SAMPLE, Recorder("late", log))
        dispatcher.register_event(1.0, PRIORITY_FLUID_STATE_UPDATE, EventKind.FLUID_STATE_UPDATE, Recorder("state", log))
        dispatcher.register_event(1.0, PRIORITY_FLUID_FLOW_UPDATE, EventKind.FLUID_FLOW_UPDATE, Recorder("flow", log))
        dispatcher.register_event(1.0, PRIORITY_FLUID_STATE_UPDATE, EventKind.LANE_SELECTOR_UPDATE, Recorder("lane", log))

        dispatcher.run(5.0)

        self.assertEqual(log, [(1.0, "flow"), (1.0, "state"), (1.0, "lane"), (2.0, "late")])
        self.assertEqual(dispatcher.current_time, 5.0)

    def test_recurring_events_stop_at_horizon(self):
        """Test that returned events are scheduled and later ones stay queued."""
        log = []
        dispatcher = Dispatcher(start_time=0.0)
        dispatcher.register_event(1.0, PRIORITY_FLUID_FLOW_UPDATE, EventKind.FLUID_FLOW_UPDATE,
                                  Recorder("tick", log, repeat_dt=1.0))

        dispatcher.run(3.0)
        self.assertEqual([t for t, _ in log], [1.0, 2.0, 3.0])
        self.assertEqual(len(dispatcher.pending()), 1)
        self.assertEqual(dispatcher.pending()[0].timestamp, 4.0)

        dispatcher.run(4.5)
        self.assertEqual([t for t, _ in log], [1.0, 2.0, 3.0, 4.0])

    def test_register_in_the_past(self):
        """Test that an event before the current time is rejected."""
        dispatcher = Dispatcher(start_time=10.0)
        with self.assertRaises(InvariantViolation):
            dispatcher.register_event(5.0, 0, EventKind.CONTROLLER_POKE, Recorder("x", []))

    def test_clear(self):
        """Test that clear drops every queued event."""
        dispatcher = Dispatcher()
        dispatcher.register_event(1.0, 0, EventKind.CONTROLLER_POKE, Recorder("x", []))
        dispatcher.clear()
        self.assertEqual(dispatcher.pending(), [])


if __name__ == "__main__":
    unittest.main()
