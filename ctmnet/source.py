"""Demand injection at source links.

Every :class:`FluidSource` turns its demand profile into arrivals, keeps the
vehicles that cannot enter yet in a per-state waiting queue, and offers the
queue to the lane groups of its link.  :func:`admit_sources` shares the
supply of each lane group between all sources of the link.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .keys import State
from .packets import PacketLaneGroup, PacketLink, PacketSplitter

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup
    from .network import Commodity, Link, Network, Path
    from .profiles import DemandProfile


class FluidSource:
    """Demand of one commodity entering at one source link.

    Attributes
    ----------
    queue:
        Vehicles waiting to enter, by state.
    arrived, admitted:
        Cumulative vehicles generated by the profile and admitted into the
        link.  ``arrived == admitted + sum(queue.values())`` at all times.
    """

    def __init__(
            self,
            link: "Link",
            demand_profile: "DemandProfile",
            commodity: "Commodity",
            path: Optional["Path"],
            network: "Network",
    ) -> None:
        if not link.is_source:
            raise ConfigurationError(
                "Demand can only enter at a source link.",
                link_id=link.id,
                commodity_id=commodity.id,
            )
        if commodity.pathfull and path is None:
            raise ConfigurationError(
                "A path-full commodity needs a path for its demand.",
                link_id=link.id,
                commodity_id=commodity.id,
            )
        if path is not None and path.link_ids[0] != link.id:
            raise ConfigurationError(
                "The path of a demand must start at its source link.",
                link_id=link.id,
                commodity_id=commodity.id,
                subnetwork_id=path.id,
            )
        self.link = link
        self.demand_profile = demand_profile
        self.commodity = commodity
        self.path = path
        self.network = network

        self.queue: Dict[State, float] = {}
        self.arrived = 0.0
        self.admitted = 0.0

    def __repr__(self) -> str:
        return f"FluidSource(link={self.link.id}, commodity={self.commodity.id}, queued={self.queue_size():.3f})"

    def queue_size(self) -> float:
        return sum(self.queue.values())

    def reset(self) -> None:
        self.queue.clear()
        self.arrived = 0.0
        self.admitted = 0.0

    def generate(self, timestamp: float, dt: float) -> None:
        """Add the arrivals of the step ``[timestamp, timestamp + dt)`` to the queue."""
        amount = self.demand_profile.get_value(timestamp) * dt
        if amount <= 0:
            return
        self.arrived += amount

        if self.path is not None:
            self._enqueue(State(self.commodity.id, self.path.id, True), amount)
            return

        packet = PacketLink({State(self.commodity.id, self.link.id): amount}, [])
        if self.link.packet_splitter is not None:
            split = self.link.packet_splitter.split_packet(packet, timestamp)
            for outlink_id in sorted(split):
                for state, vehicles in split[outlink_id].vehicles.items():
                    self._enqueue(state, vehicles)
            return

        if self.link.is_sink:
            outlink_id = self.link.id
        else:
            outlink_id = self.network.nodes[self.link.end_node_id].out_link_ids[0]
        for state, vehicles in PacketSplitter.cast_packet_null_splitter(packet, outlink_id).vehicles.items():
            self._enqueue(state, vehicles)

    def _enqueue(self, state: State, amount: float) -> None:
        if amount > 0:
            self.queue[state] = self.queue.get(state, 0.0) + amount

    def target_lanegroups(self, state: State) -> List["LaneGroup"]:
        """Lane groups of the source link that lead to the state's next link."""
        if self.link.is_sink:
            return self.link.ordered_lanegroups()
        next_link_id = self.network.next_link_id(self.link.id, state)
        targets = self.link.outlink2lanegroups.get(next_link_id)
        if not targets:
            raise ConfigurationError(
                "Source vehicles have no lane group leading to their next link.",
                link_id=self.link.id,
                outlink_id=next_link_id,
                commodity_id=state.commodity_id,
            )
        return list(targets)


def admit_sources(sources: Sequence[FluidSource], timestamp: float, dt: float) -> float:
    """Move queued vehicles of ``sources`` into their link; returns the amount admitted.

    Each state's queue is offered to its target lane groups in proportion to
    their lanes.  A lane group admits everything offered when its supply
    allows, otherwise every offer is scaled by the same factor.
    """
    offers: Dict[int, List[Tuple[FluidSource, State, float]]] = {}
    lanegroups: Dict[int, "LaneGroup"] = {}

    for source in sources:
        for state in sorted(source.queue):
            queued = source.queue[state]
            if queued <= 0:
                continue
            targets = source.target_lanegroups(state)
            total_lanes = sum(lg.num_lanes for lg in targets)
            for lg in targets:
                lanegroups[lg.id] = lg
                offers.setdefault(lg.id, []).append((source, state, queued * lg.num_lanes / total_lanes))

    admitted_total = 0.0
    for lg_id in sorted(offers):
        lg = lanegroups[lg_id]
        offered = sum(amount for _, _, amount in offers[lg_id])
        space = lg.get_supply() * dt
        ratio = 1.0 if offered <= space else space / offered
        if ratio <= 0:
            continue

        packet = PacketLaneGroup()
        for source, state, amount in offers[lg_id]:
            vehicles = amount * ratio
            packet.add(state, vehicles)
            source.queue[state] = max(0.0, source.queue[state] - vehicles)
            source.admitted += vehicles
            admitted_total += vehicles
        lg.add_vehicle_packet(timestamp, packet)

    return admitted_total


__all__ = ["FluidSource", "admit_sources"]
