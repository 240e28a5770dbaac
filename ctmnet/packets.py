"""Transient bundles of State-tagged vehicles moving between components.

Packets carry vehicle amounts (flow times the step length).  They live only
for the duration of one phase II and are consumed by the receiving lane
group.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional

from .errors import ConfigurationError
from .keys import State
from .profiles import normalize_splits

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup
    from .network import Link, Network


@dataclass
class PacketLink:
    """Vehicles arriving at a link on ``arrive_to_lanegroups``."""

    vehicles: Dict[State, float]
    arrive_to_lanegroups: List["LaneGroup"]
    road_connection_id: Optional[int] = None

    def is_empty(self) -> bool:
        return all(amount <= 0 for amount in self.vehicles.values())

    def total(self) -> float:
        return sum(amount for amount in self.vehicles.values() if amount > 0)


@dataclass
class PacketLaneGroup:
    """Vehicles bound for one downstream link, to be placed in one lane group."""

    vehicles: Dict[State, float] = field(default_factory=dict)
    target_lanegroups: List["LaneGroup"] = field(default_factory=list)

    def add(self, state: State, amount: float) -> None:
        if amount > 0:
            self.vehicles[state] = self.vehicles.get(state, 0.0) + amount

    def is_empty(self) -> bool:
        return all(amount <= 0 for amount in self.vehicles.values())

    def total(self) -> float:
        return sum(amount for amount in self.vehicles.values() if amount > 0)


class PacketSplitter:
    """Partitions packets entering a link by the downstream link they take.

    Link-local vehicles are split with the commodity's current split ratios
    and relabelled with the chosen downstream link.  Path-full vehicles keep
    their key and follow their path.
    """

    def __init__(self, link: "Link", network: "Network") -> None:
        self.link = link
        self.network = network
        self.overrides: Dict[int, Dict[int, float]] = {}

    def set_override(self, commodity_id: int, splits: Mapping[int, float]) -> None:
        """Replace the split profile of a commodity until cleared."""
        self.overrides[commodity_id] = normalize_splits(dict(splits), self.link.id, commodity_id)

    def clear_override(self, commodity_id: int) -> None:
        self.overrides.pop(commodity_id, None)

    def get_splits(self, commodity_id: int, timestamp: float) -> Dict[int, float]:
        if commodity_id in self.overrides:
            return self.overrides[commodity_id]
        profile = self.link.split_profiles.get(commodity_id)
        if profile is not None:
            return profile.get_splits(timestamp)

        # without a profile the commodity must have a single admissible outlink
        commodity = self.network.commodities[commodity_id]
        outlinks = [
            outlink_id
            for outlink_id in sorted(self.network.nodes[self.link.end_node_id].out_link_ids)
            if commodity.allows(outlink_id)
        ]
        if len(outlinks) != 1:
            raise ConfigurationError(
                "Missing split ratios for a commodity at a diverge.",
                link_id=self.link.id,
                commodity_id=commodity_id,
            )
        return {outlinks[0]: 1.0}

    def split_packet(self, packet: PacketLink, timestamp: float) -> Dict[int, PacketLaneGroup]:
        packets: Dict[int, PacketLaneGroup] = {}
        for state in sorted(packet.vehicles):
            amount = packet.vehicles[state]
            if amount <= 0:
                continue
            if state.is_path:
                outlink_id = self.network.next_link_id(self.link.id, state)
                packets.setdefault(outlink_id, PacketLaneGroup()).add(state, amount)
                continue
            for outlink_id, ratio in sorted(self.get_splits(state.commodity_id, timestamp).items()):
                if ratio <= 0:
                    continue
                packets.setdefault(outlink_id, PacketLaneGroup()).add(
                    State(state.commodity_id, outlink_id), amount * ratio
                )
        return packets

    @staticmethod
    def cast_packet_null_splitter(packet: PacketLink, outlink_id: int) -> PacketLaneGroup:
        """Relabel every link-local state with the single outgoing link."""
        lanegroup_packet = PacketLaneGroup()
        for state, amount in packet.vehicles.items():
            key = state if state.is_path else State(state.commodity_id, outlink_id)
            lanegroup_packet.add(key, amount)
        return lanegroup_packet


__all__ = ["PacketLaneGroup", "PacketLink", "PacketSplitter"]
