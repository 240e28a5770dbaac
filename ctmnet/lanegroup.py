"""Lane groups: ordered cells sharing lanes and downstream connectivity."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Set

from .cell import Cell
from .errors import ConfigurationError
from .keys import Side, State
from .road import FundamentalDiagram

if TYPE_CHECKING:  # pragma: no cover
    from .lane_selector import LaneSelector
    from .packets import PacketLaneGroup

_STAY = {Side.MIDDLE: 1.0}


class FlowAccumulator:
    """Monotone per-State count of vehicles that crossed a boundary."""

    def __init__(self) -> None:
        self.vehicles: Dict[State, float] = {}

    def increment(self, state: State, amount: float) -> None:
        if amount > 0:
            self.vehicles[state] = self.vehicles.get(state, 0.0) + amount

    def get_total(self, commodity_id: Optional[int] = None) -> float:
        return sum(
            amount
            for state, amount in self.vehicles.items()
            if commodity_id is None or state.commodity_id == commodity_id
        )

    def reset(self) -> None:
        self.vehicles.clear()


class LaneGroup:
    """A set of adjacent lanes of a link modelled as a queue of cells.

    Lanes are numbered from 1 starting on the inner (``Side.IN``) side.
    Cell 0 is the upstream-most cell, the last cell is adjacent to the
    downstream node.
    """

    def __init__(
            self,
            id: int,
            link_id: int,
            start_lane: int,
            num_lanes: int,
            length: float,
    ) -> None:
        if start_lane < 1:
            raise ConfigurationError("Lane numbers start at 1.", link_id=link_id)
        if num_lanes <= 0:
            raise ConfigurationError("A lane group needs at least one lane.", link_id=link_id)
        if length <= 0:
            raise ConfigurationError("Lane group length must be positive.", link_id=link_id)
        self.id = id
        self.link_id = link_id
        self.start_lane = start_lane
        self.num_lanes = num_lanes
        self.length = float(length)

        self.cells: List[Cell] = []
        self.fd: Optional[FundamentalDiagram] = None
        self.actuator_capacity_vps: Optional[float] = None

        # topology, set when the network is built
        self.outlink2roadconnection: Dict[int, int] = {}
        self.neighbor_in: Optional[LaneGroup] = None
        self.neighbor_out: Optional[LaneGroup] = None

        # lane changing, set when the model is built
        self.state2lanechangedirections: Dict[State, Set[Side]] = {}
        self.lane_selectors: Dict[int, "LaneSelector"] = {}

        self.flow_accumulator = FlowAccumulator()

    def __repr__(self) -> str:
        return f"LaneGroup(id={self.id}, link={self.link_id}, lanes={self.start_lane}-{self.end_lane})"

    ###############################################
    # geometry
    ###############################################

    @property
    def end_lane(self) -> int:
        return self.start_lane + self.num_lanes - 1

    @property
    def lanes(self) -> range:
        return range(self.start_lane, self.end_lane + 1)

    def overlaps(self, min_lane: int, max_lane: int) -> bool:
        return self.start_lane <= max_lane and min_lane <= self.end_lane

    def distance_to_lanes(self, min_lane: int, max_lane: int) -> int:
        """Number of lanes between this group and the range ``[min_lane, max_lane]``."""
        if self.overlaps(min_lane, max_lane):
            return 0
        if self.end_lane < min_lane:
            return min_lane - self.end_lane
        return self.start_lane - max_lane

    def neighbor(self, side: Side) -> Optional["LaneGroup"]:
        if side is Side.IN:
            return self.neighbor_in
        if side is Side.OUT:
            return self.neighbor_out
        return self

    def create_cells(self, num_cells: int, fd: FundamentalDiagram, dt: Optional[float] = None) -> None:
        """Divide the lane group into ``num_cells`` equal-length cells.

        With ``dt`` the cells never send or receive more than fits in one step.
        """
        if num_cells <= 0:
            raise ValueError("num_cells must be positive.")
        self.fd = fd
        cell_length = self.length / num_cells
        self.cells = [Cell(cell_length, self.num_lanes, fd, dt=dt) for _ in range(num_cells)]
        self._apply_capacity()

    @property
    def max_vehicles(self) -> float:
        return sum(cell.max_vehicles for cell in self.cells)

    def get_upstream_cell(self) -> Cell:
        return self.cells[0]

    def get_dnstream_cell(self) -> Cell:
        return self.cells[-1]

    ###############################################
    # actuator hooks
    ###############################################

    def set_actuator_capacity_vph(self, capacity_vph: Optional[float]) -> None:
        """Cap the lane group capacity (veh/h, all lanes); ``None`` removes the cap."""
        if capacity_vph is not None and capacity_vph < 0:
            raise ValueError("Actuator capacity cannot be negative.")
        self.actuator_capacity_vps = None if capacity_vph is None else capacity_vph / 3600.0
        self._apply_capacity()

    def _apply_capacity(self) -> None:
        for cell in self.cells:
            if self.actuator_capacity_vps is None:
                cell.set_capacity_vps(None)
            else:
                cell.set_capacity_vps(min(self.actuator_capacity_vps, cell.fd.capacity_vps * cell.lanes))

    ###############################################
    # demand and supply
    ###############################################

    def get_lanechange_probabilities(self, state: State) -> Mapping[Side, float]:
        selector = self.lane_selectors.get(state.commodity_id)
        if selector is None:
            return _STAY
        probs = selector.get_lanechange_probabilities(state.path_or_link_id)
        return probs if probs else _STAY

    def lateral_target(self, index: int, side: Side) -> Optional[int]:
        """Neighbour cell beside cell ``index`` on ``side``, counted from the downstream end.

        ``None`` when there is no neighbour or it does not reach that far upstream.
        """
        if side is Side.MIDDLE:
            return None
        neighbor = self.neighbor(side)
        if neighbor is None:
            return None
        target = len(neighbor.cells) - (len(self.cells) - index)
        return target if target >= 0 else None

    def _cell_probabilities(self, index: int) -> Callable[[State], Mapping[Side, float]]:
        blocked = {side for side in (Side.IN, Side.OUT) if self.lateral_target(index, side) is None}
        if not blocked:
            return self.get_lanechange_probabilities

        def lookup(state: State) -> Mapping[Side, float]:
            probs = self.get_lanechange_probabilities(state)
            if not any(side in blocked and prob > 0 for side, prob in probs.items()):
                return probs
            # no cell alongside: the lateral share keeps driving downstream
            folded = {side: prob for side, prob in probs.items() if side not in blocked}
            folded[Side.MIDDLE] = folded.get(Side.MIDDLE, 0.0) + sum(
                prob for side, prob in probs.items() if side in blocked
            )
            return folded

        return lookup

    def compute_demand_supply(self) -> None:
        """Phase I: per-cell demand, lane-change intent and supply snapshot."""
        for index, cell in enumerate(self.cells):
            cell.demand(self._cell_probabilities(index))
            cell.supply_snapshot = cell.supply()

    def get_demand(self) -> Dict[State, float]:
        """Longitudinal demand of the downstream cell, State -> veh/s."""
        return self.get_dnstream_cell().demand_dwn

    def get_supply(self) -> float:
        """Receivable flow of the upstream cell, veh/s."""
        return self.get_upstream_cell().supply()

    def get_space_per_lane(self) -> float:
        return self.get_supply() / self.num_lanes

    ###############################################
    # vehicles
    ###############################################

    def add_vehicle_packet(self, timestamp: float, packet: "PacketLaneGroup") -> None:
        self.get_upstream_cell().add_vehicles(packet.vehicles)

    def release_vehicles(self, vehicles: Mapping[State, float]) -> None:
        self.get_dnstream_cell().release_vehicles(vehicles)

    def update_flow_accumulators(self, state: State, amount: float) -> None:
        self.flow_accumulator.increment(state, amount)

    def update_longitudinal_flows(self, dt: float) -> None:
        """Move vehicles between consecutive cells with the phase I snapshot."""
        transfers = []
        for upcell, dncell in zip(self.cells[:-1], self.cells[1:]):
            total = sum(upcell.demand_dwn.values())
            if total <= 0:
                transfers.append({})
                continue
            ratio = min(1.0, dncell.supply_snapshot / total)
            transfers.append({state: flow * ratio * dt for state, flow in upcell.demand_dwn.items()})

        for index, vehicles in enumerate(transfers):
            self.cells[index].release_vehicles(vehicles)
            self.cells[index + 1].add_vehicles(vehicles)

    def total_vehicles(self, commodity_id: Optional[int] = None) -> float:
        return sum(
            amount
            for cell in self.cells
            for state, amount in cell.veh.items()
            if commodity_id is None or state.commodity_id == commodity_id
        )

    def vehicles_by_state(self) -> Dict[State, float]:
        totals: Dict[State, float] = {}
        for cell in self.cells:
            for state, amount in cell.veh.items():
                totals[state] = totals.get(state, 0.0) + amount
        return totals

    def reset(self) -> None:
        for cell in self.cells:
            cell.reset()
        self.flow_accumulator.reset()


__all__ = ["FlowAccumulator", "LaneGroup"]
