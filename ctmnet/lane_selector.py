"""Lane-change direction preferences per lane group and commodity.

A selector keeps, for every path-or-link key of one commodity on one lane
group, a probability distribution over the legal lane-change directions
(``Side.IN``, ``Side.MIDDLE``, ``Side.OUT``).  The cells of the lane group use
it to split their sendable mass between moving forward and changing lanes.

Refresh cadence (``dt_update``):

* ``> 0``: refresh every ``dt_update`` seconds through the dispatcher.
* ``== 0``: refresh every simulation step, i.e. with the model step.
* ``< 0``: compute once at initialisation and freeze.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set

from .dispatcher import PRIORITY_LANE_SELECTOR, Dispatcher, Event, EventKind
from .errors import ConfigurationError
from .keys import Side

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup


class LaneSelector(ABC):
    """Base class: uniform initial distribution over the legal directions."""

    def __init__(self, lg: "LaneGroup", dt_update: float, commodity_id: int, model_dt: float) -> None:
        self.lg = lg
        self.commodity_id = commodity_id
        self.dt = model_dt if dt_update == 0 else float(dt_update)
        self.side2prob: Dict[int, Dict[Side, float]] = {}
        self.options: Dict[int, Set[Side]] = {}

        for state, sides in sorted(lg.state2lanechangedirections.items()):
            if state.commodity_id != commodity_id or not sides:
                continue
            self.options[state.path_or_link_id] = set(sides)
            prob = 1.0 / len(sides)
            self.side2prob[state.path_or_link_id] = {side: prob for side in sides}

    # called by a lane-group restriction controller whenever the options change
    @abstractmethod
    def update_lane_change_probabilities_with_options(self, pathorlink_id: int, sides: Set[Side]) -> None:
        """Recompute the distribution of one key over ``sides``."""

    def initialize(self, dispatcher: Dispatcher) -> None:
        follow_up = self.poke(dispatcher.current_time)
        if follow_up is not None:
            dispatcher.register_event(follow_up.timestamp, follow_up.priority, follow_up.kind, follow_up.target)

    def handle(self, event: Event) -> Optional[Event]:
        return self.poke(event.timestamp)

    def poke(self, timestamp: float) -> Optional[Event]:
        self.update_lane_change_probabilities()
        if self.dt > 0:
            return Event(timestamp + self.dt, PRIORITY_LANE_SELECTOR, -1, EventKind.LANE_SELECTOR_UPDATE, self)
        return None

    def get_lanechange_probabilities(self, pathorlink_id: int) -> Optional[Dict[Side, float]]:
        return self.side2prob.get(pathorlink_id)

    def set_lane_change_options(self, pathorlink_id: int, sides: Set[Side]) -> None:
        """Restrict the directions of one key, e.g. from a lane-restriction controller."""
        self.options[pathorlink_id] = set(sides)
        self.update_lane_change_probabilities_with_options(pathorlink_id, set(sides))

    def update_lane_change_probabilities(self) -> None:
        for pathorlink_id in sorted(self.options):
            self.update_lane_change_probabilities_with_options(
                pathorlink_id, set(self.options[pathorlink_id])
            )


class UniformLaneSelector(LaneSelector):
    """Constant uniform distribution over the options."""

    def update_lane_change_probabilities_with_options(self, pathorlink_id: int, sides: Set[Side]) -> None:
        if not sides:
            return
        prob = 1.0 / len(sides)
        self.side2prob[pathorlink_id] = {side: prob for side in sides}


class KeepLaneSelector(LaneSelector):
    """Stay in the lane group when allowed, otherwise uniform over the options."""

    def update_lane_change_probabilities_with_options(self, pathorlink_id: int, sides: Set[Side]) -> None:
        if not sides:
            return
        if Side.MIDDLE in sides:
            self.side2prob[pathorlink_id] = {Side.MIDDLE: 1.0}
            return
        prob = 1.0 / len(sides)
        self.side2prob[pathorlink_id] = {side: prob for side in sides}


class SupplyLaneSelector(LaneSelector):
    """Weights each direction by the space per lane of the lane group on that side."""

    def update_lane_change_probabilities_with_options(self, pathorlink_id: int, sides: Set[Side]) -> None:
        if not sides:
            return
        weights: Dict[Side, float] = {}
        for side in sides:
            target = self.lg.neighbor(side)
            weights[side] = max(0.0, target.get_space_per_lane()) if target is not None else 0.0
        total = sum(weights.values())
        if total <= 0:
            prob = 1.0 / len(sides)
            self.side2prob[pathorlink_id] = {side: prob for side in sides}
            return
        self.side2prob[pathorlink_id] = {side: weight / total for side, weight in weights.items()}


LANE_SELECTORS: Dict[str, Callable[..., LaneSelector]] = {
    "keep": KeepLaneSelector,
    "uniform": UniformLaneSelector,
    "supply": SupplyLaneSelector,
}


def create_lane_selector(
        kind: str,
        lg: "LaneGroup",
        dt_update: float,
        commodity_id: int,
        model_dt: float,
) -> LaneSelector:
    try:
        factory = LANE_SELECTORS[kind]
    except KeyError:
        raise ConfigurationError(f"Unknown lane change model '{kind}'.", link_id=lg.link_id) from None
    return factory(lg, dt_update, commodity_id, model_dt)


__all__ = [
    "KeepLaneSelector",
    "LANE_SELECTORS",
    "LaneSelector",
    "SupplyLaneSelector",
    "UniformLaneSelector",
    "create_lane_selector",
]
