"""Cell-transmission model of a set of links.

One step of length ``dt`` is split in two dispatcher events at the same
timestamp:

* ``FLUID_FLOW_UPDATE`` (priority 4) runs phase I, where demand, supply and
  lane-change intent are computed for every cell and the node models resolve
  the junction flows, followed by phase II, where sources inject vehicles,
  sinks release them and the junction flows are applied as packets and
  lane-group exits.
* ``FLUID_STATE_UPDATE`` (priority 5) moves vehicles between consecutive
  cells and between neighbouring lane groups with the flows fixed in
  phase I.

Phase I only reads cell contents.  Everything that writes to a cell happens
in phase II or in the state update.
"""

from __future__ import annotations

import math
import warnings
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from .dispatcher import (
    PRIORITY_FLUID_FLOW_UPDATE,
    PRIORITY_FLUID_STATE_UPDATE,
    Dispatcher,
    Event,
    EventKind,
)
from .errors import ConfigurationError
from .keys import Side, State
from .lane_selector import create_lane_selector
from .link_model import LinkModel
from .models import Model, ModelParams, register_model
from .node_model import NodeModel
from .packets import PacketSplitter
from .road import FundamentalDiagram
from .source import FluidSource, admit_sources

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup
    from .network import Commodity, Link, Network, Path
    from .profiles import DemandProfile

# Relative slack of the CFL check and of the integer test in the cell count.
_GEOMETRY_TOLERANCE = 1e-9


def number_of_cells(length: float, max_cell_length: float) -> int:
    """Fewest equal cells of ``length`` none of which exceeds ``max_cell_length``."""
    ratio = length / max_cell_length
    rounded = round(ratio)
    if rounded >= 1 and abs(ratio - rounded) <= _GEOMETRY_TOLERANCE * max(1.0, ratio):
        return int(rounded)
    return max(1, int(math.ceil(ratio)))


@register_model("ctm")
class FluidModel(Model):
    """Multi-commodity, multi-lane-group cell-transmission model.

    Parameters
    ----------
    name:
        Model name, used in messages.
    link_ids:
        Links simulated by this model.
    params:
        Step length, cell length and lane-change settings.
    """

    def __init__(self, name: str, link_ids, params: ModelParams) -> None:
        super().__init__(name, link_ids, params)
        self.links: List["Link"] = []
        self.source_links: List["Link"] = []
        self.sink_links: List["Link"] = []
        self.node_models: Dict[int, NodeModel] = {}
        self.sources: List[FluidSource] = []

    ###############################################
    # assembly
    ###############################################

    def set_links(self, network: "Network") -> None:
        self.network = network
        link_set = set(self.link_ids)
        self.links = []
        for link_id in self.link_ids:
            if link_id not in network.links:
                raise ConfigurationError(f"Model '{self.name}' refers to an unknown link.", link_id=link_id)
            link = network.links[link_id]
            if link.model_name is not None and link.model_name != self.name:
                raise ConfigurationError(
                    f"Link belongs to models '{link.model_name}' and '{self.name}'.",
                    link_id=link_id,
                )
            link.model_name = self.name
            link.link_model = LinkModel(link, network, self.dt)
            self.links.append(link)

        self.source_links = [link for link in self.links if link.is_source]
        self.sink_links = [link for link in self.links if link.is_sink]

        self.node_models = {}
        node_ids = sorted({link.start_node_id for link in self.links} | {link.end_node_id for link in self.links})
        for node_id in node_ids:
            node = network.nodes[node_id]
            if node.is_source or node.is_sink:
                continue
            node_links = set(node.in_link_ids) | set(node.out_link_ids)
            if not node_links <= link_set:
                raise ConfigurationError(
                    f"Node {node_id} joins links of model '{self.name}' with links of another model.",
                    link_id=min(node_links - link_set),
                )
            self.node_models[node_id] = NodeModel(node, network)

    def build(self) -> None:
        if self.network is None:
            raise ConfigurationError(f"Model '{self.name}' has no network; call set_links first.")
        for link in self.links:
            self._create_cells(link)
            link.packet_splitter = self._create_packet_splitter(link)
        for link in self.links:
            self._create_lane_selectors(link)
        for node_id in sorted(self.node_models):
            self.node_models[node_id].build()

    def _create_cells(self, link: "Link") -> None:
        fd = FundamentalDiagram.from_road_params(link.road_params)
        max_cell_length = self.params.max_cell_length_m or fd.ffspeed_mps * self.dt

        for lg in link.ordered_lanegroups():
            if link.is_source or link.is_sink:
                # one cell of any length, its flows are capped by the step instead
                lg.create_cells(1, fd, dt=self.dt)
            else:
                num_cells = number_of_cells(lg.length, max_cell_length)
                self._check_cell_length(link, lg.length / num_cells, fd)
                lg.create_cells(num_cells, fd, dt=self.dt)

            if not link.is_sink and not lg.outlink2roadconnection:
                warnings.warn(
                    f"Lane group {lg.id} of link {link.id} has no road connection; "
                    f"vehicles leave it only by changing lanes.",
                    UserWarning,
                )

    def _check_cell_length(self, link: "Link", cell_length: float, fd: FundamentalDiagram) -> None:
        slack = cell_length * (1.0 + _GEOMETRY_TOLERANCE)
        if fd.ffspeed_mps * self.dt > slack or fd.wspeed_mps * self.dt > slack:
            raise ConfigurationError(
                f"Cells of {cell_length:.2f} m are shorter than the distance travelled in one "
                f"step ({fd.ffspeed_mps * self.dt:.2f} m); reduce dt or lengthen the cells.",
                link_id=link.id,
            )

    def _create_packet_splitter(self, link: "Link") -> Optional[PacketSplitter]:
        if link.is_sink:
            return None
        if len(self.network.nodes[link.end_node_id].out_link_ids) == 1:
            return None
        return PacketSplitter(link, self.network)

    def _create_lane_selectors(self, link: "Link") -> None:
        lanegroups = link.ordered_lanegroups()
        states = self.network.states_on_link(link.id)
        for lg in lanegroups:
            lg.state2lanechangedirections = {
                state: self._lanechange_directions(link, lg, state) for state in states
            }
            lg.lane_selectors = {}

        if len(lanegroups) < 2:
            return
        for lg in lanegroups:
            for commodity_id in sorted({state.commodity_id for state in states}):
                lg.lane_selectors[commodity_id] = create_lane_selector(
                    self.params.lane_change_model,
                    lg,
                    self.params.lane_change_dt_sec,
                    commodity_id,
                    self.dt,
                )

    def _lanechange_directions(self, link: "Link", lg: "LaneGroup", state: State) -> Set[Side]:
        if link.is_sink:
            return {Side.MIDDLE} | {side for side in (Side.IN, Side.OUT) if lg.neighbor(side) is not None}

        next_link_id = self.network.next_link_id(link.id, state)
        if next_link_id in lg.outlink2roadconnection:
            sides = {Side.MIDDLE}
            for side in (Side.IN, Side.OUT):
                neighbor = lg.neighbor(side)
                if neighbor is not None and next_link_id in neighbor.outlink2roadconnection:
                    sides.add(side)
            return sides

        targets = link.outlink2lanegroups.get(next_link_id, [])
        sides = set()
        if lg.neighbor_in is not None and any(t.start_lane < lg.start_lane for t in targets):
            sides.add(Side.IN)
        if lg.neighbor_out is not None and any(t.end_lane > lg.end_lane for t in targets):
            sides.add(Side.OUT)
        return sides or {Side.MIDDLE}

    def create_source(
            self,
            link: "Link",
            demand_profile: "DemandProfile",
            commodity: "Commodity",
            path: Optional["Path"],
    ) -> FluidSource:
        if link.id not in self.link_ids:
            raise ConfigurationError(f"Link is not part of model '{self.name}'.", link_id=link.id)
        source = FluidSource(link, demand_profile, commodity, path, self.network)
        link.sources.append(source)
        self.sources.append(source)
        return source

    def reset(self) -> None:
        for link in self.links:
            for lg in link.lanegroups.values():
                lg.reset()
        for source in self.sources:
            source.reset()
        for node_model in self.node_models.values():
            node_model.reset()

    ###############################################
    # dispatcher
    ###############################################

    def register_with_dispatcher(self, dispatcher: Dispatcher, start_time: float) -> None:
        first = start_time + self.dt
        dispatcher.register_event(first, PRIORITY_FLUID_FLOW_UPDATE, EventKind.FLUID_FLOW_UPDATE, self)
        dispatcher.register_event(first, PRIORITY_FLUID_STATE_UPDATE, EventKind.FLUID_STATE_UPDATE, self)
        for link in self.links:
            for lg in link.ordered_lanegroups():
                for commodity_id in sorted(lg.lane_selectors):
                    lg.lane_selectors[commodity_id].initialize(dispatcher)

    def handle(self, event: Event) -> Optional[Event]:
        if event.kind is EventKind.FLUID_FLOW_UPDATE:
            self.update_flow(event.timestamp)
        elif event.kind is EventKind.FLUID_STATE_UPDATE:
            self.update_fluid_state(event.timestamp)
        else:
            raise ValueError(f"FluidModel cannot handle {event.kind.value} events.")
        return Event(event.timestamp + self.dt, event.priority, -1, event.kind, self)

    ###############################################
    # step
    ###############################################

    def update_flow(self, timestamp: float) -> None:
        self.update_flow_I(timestamp)
        self.update_flow_II(timestamp)

    def update_flow_I(self, timestamp: float) -> None:
        for link in self.links:
            for lg in link.ordered_lanegroups():
                lg.compute_demand_supply()
        for node_id in sorted(self.node_models):
            self.node_models[node_id].update_flow(timestamp)

    def update_flow_II(self, timestamp: float) -> None:
        dt = self.dt
        # arrivals of the interval that ends at ``timestamp``
        interval_start = timestamp - dt

        for link in self.source_links:
            for source in link.sources:
                source.generate(interval_start, dt)
            admit_sources(link.sources, timestamp, dt)

        for link in self.sink_links:
            for lg in link.ordered_lanegroups():
                vehicles = {state: flow * dt for state, flow in lg.get_demand().items() if flow > 0}
                lg.release_vehicles(vehicles)
                for state, amount in vehicles.items():
                    lg.update_flow_accumulators(state, amount)

        for node_id in sorted(self.node_models):
            node_model = self.node_models[node_id]
            for out_link_id, packet in node_model.get_packets(dt):
                self.network.links[out_link_id].link_model.add_vehicle_packet(timestamp, packet)
            for lg, vehicles in node_model.get_releases(dt):
                lg.release_vehicles(vehicles)
                for state, amount in vehicles.items():
                    lg.update_flow_accumulators(state, amount)

    def update_fluid_state(self, timestamp: float) -> None:
        for link in self.links:
            lanegroups = link.ordered_lanegroups()
            for lg in lanegroups:
                lg.update_longitudinal_flows(self.dt)
            if len(lanegroups) > 1:
                self._update_lateral_flows(lanegroups)

    def _update_lateral_flows(self, lanegroups: List["LaneGroup"]) -> None:
        """Move the lane-change demand of phase I into the neighbouring lane groups.

        A cell changes lanes into the neighbour cell at the same distance from
        the downstream end, cells with no neighbour alongside do not change
        lanes.  Requests into one cell are scaled down together when they
        exceed its space.
        """
        dt = self.dt
        requests: Dict[Tuple[int, int], List[Tuple["LaneGroup", int, Dict[State, float]]]] = {}
        for lg in lanegroups:
            for index, cell in enumerate(lg.cells):
                for side in (Side.IN, Side.OUT):
                    flows = cell.demand_lc.get(side)
                    target = lg.lateral_target(index, side)
                    if not flows or target is None:
                        continue
                    neighbor = lg.neighbor(side)
                    vehicles = {state: flow * dt for state, flow in flows.items() if flow > 0}
                    if vehicles:
                        requests.setdefault((neighbor.id, target), []).append((lg, index, vehicles))

        by_id = {lg.id: lg for lg in lanegroups}
        for (lg_id, target), moves in sorted(requests.items(), key=lambda item: item[0]):
            target_cell = by_id[lg_id].cells[target]
            requested = sum(sum(vehicles.values()) for _, _, vehicles in moves)
            space = max(0.0, target_cell.max_vehicles - target_cell.total_vehicles())
            ratio = 1.0 if requested <= space else space / requested
            if ratio <= 0:
                continue
            for lg, index, vehicles in moves:
                moved = {state: amount * ratio for state, amount in vehicles.items()}
                lg.cells[index].release_vehicles(moved)
                target_cell.add_vehicles(moved)

    ###############################################
    # queries
    ###############################################

    def total_vehicles(self, commodity_id: Optional[int] = None) -> float:
        return sum(link.total_vehicles(commodity_id) for link in self.links)

    def queued_vehicles(self) -> float:
        return sum(source.queue_size() for source in self.sources)


__all__ = ["FluidModel", "number_of_cells"]
