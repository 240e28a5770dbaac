"""Programmatic assembly and execution of a simulation.

Example
-------
>>> from ctmnet import ModelParams, RoadParams, Scenario
>>> road = RoadParams(capacity_vphpl=1800, speed_kph=72, jam_density_vpkpl=150)
>>> scenario = Scenario()
>>> for node_id in (1, 2, 3):
...     _ = scenario.add_node(node_id)
>>> _ = scenario.add_link(1, 1, 2, length=200.0, lanes=1, road_params=road)
>>> _ = scenario.add_link(2, 2, 3, length=200.0, lanes=1, road_params=road)
>>> _ = scenario.add_road_connection(1, in_link_id=1, out_link_id=2)
>>> _ = scenario.add_commodity(1)
>>> _ = scenario.add_demand(commodity_id=1, link_id=1, profile=0.2)
>>> _ = scenario.add_model("ctm", "ctm", params=ModelParams(dt_sec=2.0))
>>> scenario.initialize()
>>> scenario.advance(60.0)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .dispatcher import PRIORITY_CONTROLLER, Dispatcher, Event, EventKind
from .errors import ConfigurationError
from .keys import Side
from .lanegroup import LaneGroup
from .models import Model, ModelParams, create_model, resolve_model_type
from .network import Commodity, LaneGroupSpec, LaneRange, Link, Network, Node, Path, RoadConnection
from .outputs import OutputCollection, OutputRequest
from .profiles import DemandProfile, Profile, SplitProfile
from .road import RoadParams

# registers the "ctm" model type
from . import fluid_model  # noqa: F401


class Controller:
    """Callable invoked every ``dt`` seconds between model steps."""

    def __init__(self, scenario: "Scenario", callback: Callable[["Scenario", float], None], dt: float) -> None:
        if dt <= 0:
            raise ValueError("Controller dt must be positive.")
        self.scenario = scenario
        self.callback = callback
        self.dt = float(dt)

    def handle(self, event: Event) -> Optional[Event]:
        self.callback(self.scenario, event.timestamp)
        return Event(event.timestamp + self.dt, PRIORITY_CONTROLLER, -1, EventKind.CONTROLLER_POKE, self)


@dataclass
class _ModelRequest:
    name: str
    model_type: str
    link_ids: Optional[List[int]]
    params: ModelParams


class Scenario:
    """Network, demands, models and the dispatcher that drives them."""

    def __init__(self) -> None:
        self.network = Network()
        self.demands: List[DemandProfile] = []
        self.splits: List[SplitProfile] = []
        self.model_requests: List[_ModelRequest] = []
        self.models: Dict[str, Model] = {}
        self.controllers: List[Controller] = []
        self.outputs: List[OutputRequest] = []
        self.dispatcher: Optional[Dispatcher] = None
        self.start_time = 0.0
        self.initialized = False

    ###############################################
    # assembly
    ###############################################

    def _check_not_initialized(self) -> None:
        if self.initialized:
            raise ConfigurationError("The scenario is already initialised; call reset() first.")

    def add_node(self, node_id: int) -> Node:
        self._check_not_initialized()
        return self.network.add_node(node_id)

    def add_link(
            self,
            link_id: int,
            start_node_id: int,
            end_node_id: int,
            length: float,
            lanes: int,
            road_params: RoadParams,
            lanegroups: Optional[Sequence[LaneGroupSpec]] = None,
    ) -> Link:
        self._check_not_initialized()
        link = Link(link_id, start_node_id, end_node_id, length, lanes, road_params, lanegroups)
        return self.network.add_link(link)

    def add_road_connection(
            self,
            rc_id: int,
            in_link_id: int,
            out_link_id: int,
            in_lanes: Optional[LaneRange] = None,
            out_lanes: Optional[LaneRange] = None,
            capacity_vph: Optional[float] = None,
    ) -> RoadConnection:
        self._check_not_initialized()
        rc = RoadConnection(rc_id, in_link_id, out_link_id, in_lanes, out_lanes, capacity_vph)
        return self.network.add_road_connection(rc)

    def add_commodity(
            self,
            commodity_id: int,
            name: str = "",
            pathfull: bool = False,
            link_ids: Optional[Iterable[int]] = None,
    ) -> Commodity:
        self._check_not_initialized()
        commodity = Commodity(
            commodity_id,
            name=name or f"commodity {commodity_id}",
            pathfull=pathfull,
            link_ids=None if link_ids is None else set(link_ids),
        )
        return self.network.add_commodity(commodity)

    def add_path(self, path_id: int, link_ids: Sequence[int]) -> Path:
        self._check_not_initialized()
        return self.network.add_path(Path(path_id, tuple(link_ids)))

    def add_demand(
            self,
            commodity_id: int,
            link_id: int,
            profile: Profile,
            dt: Optional[float] = None,
            start_time: float = 0.0,
            path_id: Optional[int] = None,
    ) -> DemandProfile:
        """Arrival rate (veh/s) of a commodity at a source link."""
        self._check_not_initialized()
        if commodity_id not in self.network.commodities:
            raise ConfigurationError("Demand for an unknown commodity.", commodity_id=commodity_id, link_id=link_id)
        if link_id not in self.network.links:
            raise ConfigurationError("Demand on an unknown link.", commodity_id=commodity_id, link_id=link_id)
        commodity = self.network.commodities[commodity_id]
        if path_id is not None:
            if path_id not in self.network.paths:
                raise ConfigurationError("Demand on an unknown path.", commodity_id=commodity_id, subnetwork_id=path_id)
            if not commodity.pathfull:
                raise ConfigurationError(
                    "Only path-full commodities follow a path.",
                    commodity_id=commodity_id,
                    subnetwork_id=path_id,
                )
            if path_id not in commodity.path_ids:
                commodity.path_ids.append(path_id)
        demand = DemandProfile(commodity_id, link_id, profile, dt=dt, start_time=start_time, path_id=path_id)
        self.demands.append(demand)
        return demand

    def add_split(
            self,
            link_id: int,
            commodity_id: int,
            outlink2profile: Mapping[int, Profile],
            dt: Optional[float] = None,
            start_time: float = 0.0,
    ) -> SplitProfile:
        """Turning proportions of a link-local commodity at the end of ``link_id``."""
        self._check_not_initialized()
        if link_id not in self.network.links:
            raise ConfigurationError("Split ratios on an unknown link.", link_id=link_id, commodity_id=commodity_id)
        if commodity_id not in self.network.commodities:
            raise ConfigurationError("Split ratios for an unknown commodity.", link_id=link_id, commodity_id=commodity_id)
        split = SplitProfile(link_id, commodity_id, dict(outlink2profile), dt=dt, start_time=start_time)
        self.splits.append(split)
        return split

    def add_model(
            self,
            name: str,
            model_type: str = "ctm",
            link_ids: Optional[Iterable[int]] = None,
            params: Optional[ModelParams] = None,
    ) -> None:
        """Assign links to a model; ``link_ids=None`` takes every link."""
        self._check_not_initialized()
        if any(request.name == name for request in self.model_requests):
            raise ConfigurationError(f"Duplicate model name '{name}'.")
        if params is None:
            raise ConfigurationError(f"Model '{name}' needs ModelParams.")
        request = _ModelRequest(name, model_type, None if link_ids is None else sorted(link_ids), params)
        # unknown or unimplemented types fail here, before anything is built
        resolve_model_type(model_type)
        self.model_requests.append(request)

    def add_controller(self, callback: Callable[["Scenario", float], None], dt: float) -> Controller:
        """Call ``callback(scenario, time)`` every ``dt`` seconds, before the model step."""
        self._check_not_initialized()
        controller = Controller(self, callback, dt)
        self.controllers.append(controller)
        return controller

    def request_output(self, output: OutputRequest) -> OutputRequest:
        self._check_not_initialized()
        self.outputs.append(output)
        return output

    ###############################################
    # initialisation
    ###############################################

    def initialize(self, start_time: float = 0.0) -> None:
        """Validate the scenario, build the models and schedule the first events."""
        self._check_not_initialized()
        network = self.network
        network.build()

        for link in network.links.values():
            link.split_profiles = {}
        for split in self.splits:
            self._attach_split(split, start_time)
        self._validate_paths()

        self.models = self._create_models()
        for name in sorted(self.models):
            self.models[name].set_links(network)
        for name in sorted(self.models):
            self.models[name].build()

        for demand in self.demands:
            link = network.links[demand.link_id]
            model = self.models[link.model_name]
            path = network.paths[demand.path_id] if demand.path_id is not None else None
            model.create_source(link, demand, network.commodities[demand.commodity_id], path)

        self.start_time = float(start_time)
        self.dispatcher = Dispatcher(start_time)
        for controller in self.controllers:
            self.dispatcher.register_event(start_time, PRIORITY_CONTROLLER, EventKind.CONTROLLER_POKE, controller)
        for name in sorted(self.models):
            self.models[name].register_with_dispatcher(self.dispatcher, start_time)
        for output in self.outputs:
            output.register(network, self.dispatcher, start_time)
        self.initialized = True

    def _attach_split(self, split: SplitProfile, start_time: float) -> None:
        link = self.network.links[split.link_id]
        if link.is_sink:
            raise ConfigurationError("Split ratios on a sink link.", link_id=link.id, commodity_id=split.commodity_id)
        out_link_ids = self.network.nodes[link.end_node_id].out_link_ids
        split.get_splits(start_time)
        for outlink_id in sorted(split.outlink2profile):
            if outlink_id not in out_link_ids:
                raise ConfigurationError(
                    "Split ratio towards a link that does not leave the end node.",
                    link_id=link.id,
                    outlink_id=outlink_id,
                    commodity_id=split.commodity_id,
                )
            if split.may_be_positive(outlink_id) and not link.outlink2lanegroups.get(outlink_id):
                raise ConfigurationError(
                    "Positive split ratio towards a link that no lane group can reach.",
                    link_id=link.id,
                    outlink_id=outlink_id,
                    commodity_id=split.commodity_id,
                )
        if split.commodity_id in link.split_profiles:
            raise ConfigurationError(
                "Duplicate split ratios for a commodity.",
                link_id=link.id,
                commodity_id=split.commodity_id,
            )
        link.split_profiles[split.commodity_id] = split

    def _validate_paths(self) -> None:
        for path_id in sorted(self.network.paths):
            path = self.network.paths[path_id]
            for up_id, dn_id in zip(path.link_ids[:-1], path.link_ids[1:]):
                if not self.network.links[up_id].outlink2lanegroups.get(dn_id):
                    raise ConfigurationError(
                        "No road connection between consecutive links of a path.",
                        link_id=up_id,
                        outlink_id=dn_id,
                        subnetwork_id=path_id,
                    )

    def _create_models(self) -> Dict[str, Model]:
        if not self.model_requests:
            raise ConfigurationError("The scenario has no model.")
        models: Dict[str, Model] = {}
        assigned: Dict[int, str] = {}
        for request in self.model_requests:
            link_ids = request.link_ids if request.link_ids is not None else sorted(self.network.links)
            for link_id in link_ids:
                if link_id in assigned:
                    raise ConfigurationError(
                        f"Link is assigned to models '{assigned[link_id]}' and '{request.name}'.",
                        link_id=link_id,
                    )
                assigned[link_id] = request.name
            models[request.name] = create_model(request.model_type, request.name, link_ids, request.params)

        unassigned = sorted(set(self.network.links) - set(assigned))
        if unassigned:
            raise ConfigurationError("Link is not assigned to any model.", link_id=unassigned[0])
        return models

    ###############################################
    # execution
    ###############################################

    @property
    def current_time(self) -> float:
        return self.dispatcher.current_time if self.dispatcher is not None else self.start_time

    def advance(self, duration: float) -> None:
        """Run the simulation for ``duration`` more seconds."""
        if not self.initialized:
            raise ConfigurationError("Call initialize() before advance().")
        if duration < 0:
            raise ValueError("duration cannot be negative.")
        self.dispatcher.run(self.dispatcher.current_time + duration)

    def run(self, duration: float, start_time: float = 0.0) -> OutputCollection:
        """Initialise if needed, advance by ``duration`` and return the outputs."""
        if not self.initialized:
            self.initialize(start_time)
        self.advance(duration)
        return self.get_outputs()

    def get_outputs(self) -> OutputCollection:
        return OutputCollection([output.result() for output in self.outputs])

    def reset(self) -> None:
        """Empty every cell and queue and forget the schedule; initialise again to rerun.

        Capacities set through ``set_lanegroup_capacity`` are removed as well.
        """
        for name in sorted(self.models):
            self.models[name].reset()
        for output in self.outputs:
            output.reset()
        if self.dispatcher is not None:
            self.dispatcher.clear()
        for link in self.network.links.values():
            link.sources = []
            link.model_name = None
            link.link_model = None
            link.packet_splitter = None
        for lanegroup_id in sorted(self.network.lanegroups):
            self.network.lanegroups[lanegroup_id].set_actuator_capacity_vph(None)
        self.models = {}
        self.dispatcher = None
        self.initialized = False

    ###############################################
    # queries
    ###############################################

    def get_link(self, link_id: int) -> Link:
        return self.network.links[link_id]

    def get_lanegroup(self, lanegroup_id: int) -> LaneGroup:
        return self.network.lanegroups[lanegroup_id]

    def get_link_vehicles(self, link_id: int, commodity_id: Optional[int] = None) -> float:
        return self.network.links[link_id].total_vehicles(commodity_id)

    def get_cell_vehicles(self, lanegroup_id: int) -> List[float]:
        return [cell.total_vehicles() for cell in self.network.lanegroups[lanegroup_id].cells]

    def get_link_exit_count(self, link_id: int, commodity_id: Optional[int] = None) -> float:
        return self.network.links[link_id].get_exit_count(commodity_id)

    def get_queue(self, link_id: int) -> float:
        return sum(source.queue_size() for source in self.network.links[link_id].sources)

    def total_vehicles(self, commodity_id: Optional[int] = None) -> float:
        return sum(link.total_vehicles(commodity_id) for link in self.network.links.values())

    ###############################################
    # actuator hooks
    ###############################################

    def set_lanegroup_capacity(self, lanegroup_id: int, capacity_vph: Optional[float]) -> None:
        """Cap a lane group's capacity from the next step on; ``None`` removes the cap."""
        self.network.lanegroups[lanegroup_id].set_actuator_capacity_vph(capacity_vph)

    def set_split_ratios(
            self,
            link_id: int,
            commodity_id: int,
            splits: Optional[Mapping[int, float]],
    ) -> None:
        """Override the split ratios of a commodity; ``None`` returns to the profile."""
        link = self.network.links[link_id]
        if link.packet_splitter is None:
            raise ConfigurationError(
                "Split ratios can only be set where a link diverges.",
                link_id=link_id,
                commodity_id=commodity_id,
            )
        if splits is None:
            link.packet_splitter.clear_override(commodity_id)
            return
        for outlink_id, ratio in sorted(splits.items()):
            if ratio > 0 and not link.outlink2lanegroups.get(outlink_id):
                raise ConfigurationError(
                    "Positive split ratio towards a link that no lane group can reach.",
                    link_id=link_id,
                    outlink_id=outlink_id,
                    commodity_id=commodity_id,
                )
        link.packet_splitter.set_override(commodity_id, splits)

    def set_lane_change_options(
            self,
            lanegroup_id: int,
            commodity_id: int,
            pathorlink_id: int,
            sides: Iterable[Side],
    ) -> None:
        """Restrict the lane-change directions of one key of a lane group."""
        lg = self.network.lanegroups[lanegroup_id]
        selector = lg.lane_selectors.get(commodity_id)
        if selector is None:
            raise ConfigurationError(
                f"Lane group {lanegroup_id} has no lane selector for the commodity.",
                link_id=lg.link_id,
                commodity_id=commodity_id,
            )
        selector.set_lane_change_options(pathorlink_id, set(sides))


__all__ = ["Controller", "Scenario"]
