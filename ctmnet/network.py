"""Network graph: nodes, links, road connections, commodities and paths.

The :class:`Network` is an arena.  Entities refer to each other through
integer ids (a link knows the ids of its end nodes, a road connection the ids
of its links) and every cross-reference is resolved through the network's
dictionaries.  Only ownership is held by reference: a link owns its lane
groups and a lane group owns its cells.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set, Tuple

from .errors import ConfigurationError
from .keys import State
from .lanegroup import LaneGroup
from .profiles import SplitProfile
from .road import RoadParams

if TYPE_CHECKING:  # pragma: no cover
    from .link_model import LinkModel
    from .packets import PacketSplitter
    from .source import FluidSource

LaneRange = Tuple[int, int]


@dataclass(frozen=True)
class LaneGroupSpec:
    """Lanes ``start_lane .. start_lane + num_lanes - 1`` of a link.

    ``length`` defaults to the link length; shorter lane groups model turn
    pockets.
    """

    start_lane: int
    num_lanes: int
    length: Optional[float] = None

    def __post_init__(self) -> None:
        if self.start_lane < 1:
            raise ValueError("Lane numbers start at 1.")
        if self.num_lanes <= 0:
            raise ValueError("num_lanes must be positive.")
        if self.length is not None and self.length <= 0:
            raise ValueError("Lane group length must be positive.")


@dataclass
class Node:
    id: int
    in_link_ids: List[int] = field(default_factory=list)
    out_link_ids: List[int] = field(default_factory=list)

    @property
    def is_source(self) -> bool:
        return not self.in_link_ids

    @property
    def is_sink(self) -> bool:
        return not self.out_link_ids


@dataclass
class RoadConnection:
    """Turning movement from lanes of one link to lanes of the next.

    ``in_lanes``/``out_lanes`` default to every lane of the link.
    ``capacity_vph`` is the saturation flow of the movement, ``None`` for
    unbounded.
    """

    id: int
    in_link_id: int
    out_link_id: int
    in_lanes: Optional[LaneRange] = None
    out_lanes: Optional[LaneRange] = None
    capacity_vph: Optional[float] = None

    # resolved when the network is built
    in_lanegroup_ids: List[int] = field(default_factory=list)
    out_lanegroup_ids: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.capacity_vph is not None and self.capacity_vph < 0:
            raise ValueError("Road connection capacity cannot be negative.")
        for lanes in (self.in_lanes, self.out_lanes):
            if lanes is not None and not 1 <= lanes[0] <= lanes[1]:
                raise ValueError("Lane ranges must satisfy 1 <= min <= max.")


@dataclass
class Commodity:
    """A class of demand.

    Path-full commodities follow a path given with each demand.  Link-local
    commodities are routed by split ratios and may be restricted to a set of
    links.
    """

    id: int
    name: str = ""
    pathfull: bool = False
    link_ids: Optional[Set[int]] = None
    path_ids: List[int] = field(default_factory=list)

    def allows(self, link_id: int) -> bool:
        return self.link_ids is None or link_id in self.link_ids


@dataclass
class Path:
    id: int
    link_ids: Tuple[int, ...]

    def __post_init__(self) -> None:
        self.link_ids = tuple(self.link_ids)
        if not self.link_ids:
            raise ConfigurationError("A path needs at least one link.", subnetwork_id=self.id)

    def next_link_id(self, link_id: int) -> int:
        """Link after ``link_id``; the last link maps to itself."""
        index = self.link_ids.index(link_id)
        if index + 1 < len(self.link_ids):
            return self.link_ids[index + 1]
        return link_id


class Link:
    """Directed road segment between two nodes."""

    def __init__(
            self,
            id: int,
            start_node_id: int,
            end_node_id: int,
            length: float,
            full_lanes: int,
            road_params: RoadParams,
            lanegroup_specs: Optional[Sequence[LaneGroupSpec]] = None,
    ) -> None:
        if length <= 0:
            raise ConfigurationError("Link length must be positive.", link_id=id)
        if full_lanes <= 0:
            raise ConfigurationError("A link needs at least one lane.", link_id=id)
        self.id = id
        self.start_node_id = start_node_id
        self.end_node_id = end_node_id
        self.length = float(length)
        self.full_lanes = full_lanes
        self.road_params = road_params
        self.lanegroup_specs: List[LaneGroupSpec] = list(
            lanegroup_specs or [LaneGroupSpec(start_lane=1, num_lanes=full_lanes)]
        )

        self.is_source = False
        self.is_sink = False
        self.lanegroups: Dict[int, LaneGroup] = {}
        self.outlink2lanegroups: Dict[int, List[LaneGroup]] = {}
        self.split_profiles: Dict[int, SplitProfile] = {}
        self.packet_splitter: Optional["PacketSplitter"] = None
        self.model_name: Optional[str] = None
        self.link_model: Optional["LinkModel"] = None
        self.sources: List["FluidSource"] = []

    def __repr__(self) -> str:
        return f"Link(id={self.id}, {self.start_node_id}->{self.end_node_id}, lanes={self.full_lanes})"

    def ordered_lanegroups(self) -> List[LaneGroup]:
        """Lane groups from the inner to the outer side."""
        return sorted(self.lanegroups.values(), key=lambda lg: lg.start_lane)

    def lanegroups_on_lanes(self, lanes: Optional[LaneRange]) -> List[LaneGroup]:
        min_lane, max_lane = lanes if lanes is not None else (1, self.full_lanes)
        if max_lane > self.full_lanes:
            raise ConfigurationError(
                f"Lane range {min_lane}-{max_lane} exceeds the {self.full_lanes} lanes of the link.",
                link_id=self.id,
            )
        return [lg for lg in self.ordered_lanegroups() if lg.overlaps(min_lane, max_lane)]

    def total_vehicles(self, commodity_id: Optional[int] = None) -> float:
        return sum(lg.total_vehicles(commodity_id) for lg in self.lanegroups.values())

    def get_max_vehicles(self) -> float:
        return sum(lg.max_vehicles for lg in self.lanegroups.values())

    def get_supply(self) -> float:
        return sum(lg.get_supply() for lg in self.lanegroups.values())

    def get_exit_count(self, commodity_id: Optional[int] = None) -> float:
        return sum(lg.flow_accumulator.get_total(commodity_id) for lg in self.lanegroups.values())


class Network:
    """Arena holding every entity of the road network."""

    def __init__(self) -> None:
        self.nodes: Dict[int, Node] = {}
        self.links: Dict[int, Link] = {}
        self.road_connections: Dict[int, RoadConnection] = {}
        self.commodities: Dict[int, Commodity] = {}
        self.paths: Dict[int, Path] = {}
        self.lanegroups: Dict[int, LaneGroup] = {}
        self.built = False

    ###############################################
    # assembly
    ###############################################

    def add_node(self, node_id: int) -> Node:
        if node_id in self.nodes:
            raise ConfigurationError(f"Duplicate node id {node_id}.")
        node = Node(node_id)
        self.nodes[node_id] = node
        return node

    def add_link(self, link: Link) -> Link:
        if link.id in self.links:
            raise ConfigurationError("Duplicate link id.", link_id=link.id)
        for node_id in (link.start_node_id, link.end_node_id):
            if node_id not in self.nodes:
                raise ConfigurationError(f"Unknown node id {node_id}.", link_id=link.id)
        self.links[link.id] = link
        self.nodes[link.start_node_id].out_link_ids.append(link.id)
        self.nodes[link.end_node_id].in_link_ids.append(link.id)
        return link

    def add_road_connection(self, rc: RoadConnection) -> RoadConnection:
        if rc.id in self.road_connections:
            raise ConfigurationError(f"Duplicate road connection id {rc.id}.")
        for link_id in (rc.in_link_id, rc.out_link_id):
            if link_id not in self.links:
                raise ConfigurationError(f"Road connection {rc.id} refers to an unknown link.", link_id=link_id)
        in_link = self.links[rc.in_link_id]
        out_link = self.links[rc.out_link_id]
        if in_link.end_node_id != out_link.start_node_id:
            raise ConfigurationError(
                f"Road connection {rc.id} joins links that do not share a node.",
                link_id=rc.in_link_id,
                outlink_id=rc.out_link_id,
            )
        self.road_connections[rc.id] = rc
        return rc

    def add_commodity(self, commodity: Commodity) -> Commodity:
        if commodity.id in self.commodities:
            raise ConfigurationError("Duplicate commodity id.", commodity_id=commodity.id)
        if commodity.link_ids is not None:
            unknown = set(commodity.link_ids) - set(self.links)
            if unknown:
                raise ConfigurationError(
                    f"Commodity refers to unknown links {sorted(unknown)}.",
                    commodity_id=commodity.id,
                )
        self.commodities[commodity.id] = commodity
        return commodity

    def add_path(self, path: Path) -> Path:
        if path.id in self.paths:
            raise ConfigurationError("Duplicate path id.", subnetwork_id=path.id)
        for link_id in path.link_ids:
            if link_id not in self.links:
                raise ConfigurationError("Path refers to an unknown link.", link_id=link_id, subnetwork_id=path.id)
        for up_id, dn_id in zip(path.link_ids[:-1], path.link_ids[1:]):
            if self.links[up_id].end_node_id != self.links[dn_id].start_node_id:
                raise ConfigurationError(
                    "Subnetwork is assigned to a pathfull commodity, but it is not a linear path.",
                    subnetwork_id=path.id,
                )
        self.paths[path.id] = path
        return path

    ###############################################
    # topology
    ###############################################

    def build(self) -> None:
        """Create lane groups and resolve road connections into lane groups."""
        if self.built:
            return
        next_lanegroup_id = 0
        for link_id in sorted(self.links):
            link = self.links[link_id]
            link.is_source = self.nodes[link.start_node_id].is_source
            link.is_sink = self.nodes[link.end_node_id].is_sink
            covered: List[int] = []
            for spec in sorted(link.lanegroup_specs, key=lambda s: s.start_lane):
                lg = LaneGroup(
                    id=next_lanegroup_id,
                    link_id=link.id,
                    start_lane=spec.start_lane,
                    num_lanes=spec.num_lanes,
                    length=spec.length if spec.length is not None else link.length,
                )
                next_lanegroup_id += 1
                if lg.length > link.length:
                    raise ConfigurationError("Lane group is longer than its link.", link_id=link.id)
                link.lanegroups[lg.id] = lg
                self.lanegroups[lg.id] = lg
                covered.extend(lg.lanes)
            if sorted(covered) != list(range(1, link.full_lanes + 1)):
                raise ConfigurationError(
                    "Lane groups must cover every lane of the link exactly once.",
                    link_id=link.id,
                )
            ordered = link.ordered_lanegroups()
            for inner, outer in zip(ordered[:-1], ordered[1:]):
                inner.neighbor_out = outer
                outer.neighbor_in = inner

        for rc_id in sorted(self.road_connections):
            rc = self.road_connections[rc_id]
            in_link = self.links[rc.in_link_id]
            out_link = self.links[rc.out_link_id]
            in_lgs = in_link.lanegroups_on_lanes(rc.in_lanes)
            out_lgs = out_link.lanegroups_on_lanes(rc.out_lanes)
            rc.in_lanegroup_ids = [lg.id for lg in in_lgs]
            rc.out_lanegroup_ids = [lg.id for lg in out_lgs]
            for lg in in_lgs:
                existing = lg.outlink2roadconnection.get(out_link.id)
                if existing is not None and existing != rc.id:
                    raise ConfigurationError(
                        f"Lane group {lg.id} has road connections {existing} and {rc.id} to the same link.",
                        link_id=in_link.id,
                        outlink_id=out_link.id,
                    )
                lg.outlink2roadconnection[out_link.id] = rc.id
                in_link.outlink2lanegroups.setdefault(out_link.id, [])
                if lg not in in_link.outlink2lanegroups[out_link.id]:
                    in_link.outlink2lanegroups[out_link.id].append(lg)

        for link in self.links.values():
            for lgs in link.outlink2lanegroups.values():
                lgs.sort(key=lambda lg: lg.id)
        self.built = True

    ###############################################
    # routing queries
    ###############################################

    def next_link_id(self, link_id: int, state: State) -> int:
        """Link that vehicles of ``state`` take when they leave ``link_id``."""
        if not state.is_path:
            return state.path_or_link_id
        path = self.paths[state.path_or_link_id]
        if link_id not in path.link_ids:
            raise ConfigurationError(
                "Path-full vehicles found on a link outside their path.",
                link_id=link_id,
                commodity_id=state.commodity_id,
                subnetwork_id=path.id,
            )
        return path.next_link_id(link_id)

    def states_on_link(self, link_id: int) -> List[State]:
        """Every State that can be present on ``link_id``, sorted."""
        link = self.links[link_id]
        states: List[State] = []
        for commodity_id in sorted(self.commodities):
            commodity = self.commodities[commodity_id]
            if commodity.pathfull:
                for path_id in sorted(commodity.path_ids):
                    if link_id in self.paths[path_id].link_ids:
                        states.append(State(commodity_id, path_id, True))
                continue
            if not commodity.allows(link_id):
                continue
            if link.is_sink:
                states.append(State(commodity_id, link_id))
                continue
            for outlink_id in sorted(self.nodes[link.end_node_id].out_link_ids):
                if commodity.allows(outlink_id):
                    states.append(State(commodity_id, outlink_id))
        return states


__all__ = [
    "Commodity",
    "LaneGroupSpec",
    "Link",
    "Network",
    "Node",
    "Path",
    "RoadConnection",
]
