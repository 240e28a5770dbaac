"""Placement of vehicles arriving at a link into its lane groups."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

from .errors import ConfigurationError, InvariantViolation
from .packets import PacketLink, PacketSplitter

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup
    from .network import Link, Network

# Slack (relative, absolute in vehicles) when comparing a packet with the space of a lane group.
_SPACE_TOLERANCE = 1e-9
_SPACE_TOLERANCE_VEH = 1e-9


class LinkModel:
    """Packet router of one link.

    Parameters
    ----------
    link:
        The link receiving the packets.
    network:
        Arena used to resolve node and path ids.
    dt:
        Step length of the owning model, used to turn lane-group supply
        (veh/s) into space (vehicles).
    """

    def __init__(self, link: "Link", network: "Network", dt: float) -> None:
        self.link = link
        self.network = network
        self.dt = float(dt)

    def add_vehicle_packet(self, timestamp: float, packet: PacketLink) -> None:
        if packet.is_empty():
            return

        link = self.link

        # sink or a single downstream link: nothing to choose
        if link.packet_splitter is None:
            if link.is_sink:
                outlink_id = link.id
            else:
                outlink_id = self.network.nodes[link.end_node_id].out_link_ids[0]
            lanegroup_packet = PacketSplitter.cast_packet_null_splitter(packet, outlink_id)
            join_lanegroup = min(packet.arrive_to_lanegroups, key=lambda lg: lg.id)
            join_lanegroup.add_vehicle_packet(timestamp, lanegroup_packet)
            return

        lanegroup_packets = link.packet_splitter.split_packet(packet, timestamp)

        for outlink_id in sorted(lanegroup_packets):
            lanegroup_packet = lanegroup_packets[outlink_id]
            if lanegroup_packet.is_empty():
                continue

            target_lanegroups = link.outlink2lanegroups.get(outlink_id)
            if not target_lanegroups:
                raise ConfigurationError(
                    "target_lanegroups is empty. This may be an error in split ratios: "
                    "there is no access between these links, yet a positive split ratio "
                    "sends vehicles from one to the other.",
                    link_id=link.id,
                    outlink_id=outlink_id,
                )
            lanegroup_packet.target_lanegroups = list(target_lanegroups)

            # lane groups where the packet arrived that also reach the outlink
            candidate_lanegroups = [
                lg for lg in packet.arrive_to_lanegroups if lg in target_lanegroups
            ]
            if not candidate_lanegroups:
                # the vehicles change lanes over the length of the link
                candidate_lanegroups = list(target_lanegroups)

            join_lanegroup = self.choose_best_lanegroup(
                candidate_lanegroups, lanegroup_packet.total(), self.dt
            )

            if join_lanegroup is None:
                join_lanegroup = self.choose_closest_that_is_not_full(
                    packet.arrive_to_lanegroups,
                    candidate_lanegroups,
                    target_lanegroups,
                )

            join_lanegroup.add_vehicle_packet(timestamp, lanegroup_packet)

    @staticmethod
    def choose_best_lanegroup(
            candidate_lanegroups: Sequence["LaneGroup"],
            amount: float = 0.0,
            dt: float = 1.0,
    ) -> Optional["LaneGroup"]:
        """Lane group with the most space per lane that can take ``amount``.

        Ties go to the lowest lane-group id.  Returns ``None`` when every
        candidate is full.
        """
        open_lanegroups = [
            lg
            for lg in candidate_lanegroups
            if lg.get_supply() > 0
            and lg.get_supply() * dt + _SPACE_TOLERANCE_VEH >= amount * (1.0 - _SPACE_TOLERANCE)
        ]
        if not open_lanegroups:
            return None
        return max(open_lanegroups, key=lambda lg: (lg.get_space_per_lane(), -lg.id))

    @staticmethod
    def choose_closest_that_is_not_full(
            arrive_to_lanegroups: Sequence["LaneGroup"],
            candidate_lanegroups: Sequence["LaneGroup"],
            target_lanegroups: Sequence["LaneGroup"],
    ) -> "LaneGroup":
        """Arrival lane group outside the candidates closest to the targets.

        The caller checked that the link had space, so the second-best set
        cannot be empty.
        """
        second_best_candidates = sorted(
            (lg for lg in arrive_to_lanegroups if lg not in candidate_lanegroups),
            key=lambda lg: lg.id,
        )
        if not second_best_candidates:
            raise InvariantViolation(
                "No second-best lane group: every candidate is full and the packet "
                "arrived only on candidate lane groups."
            )

        min_lane = min(lg.start_lane for lg in target_lanegroups)
        max_lane = max(lg.end_lane for lg in target_lanegroups)
        return min(
            second_best_candidates,
            key=lambda lg: (lg.distance_to_lanes(min_lane, max_lane), lg.id),
        )


__all__ = ["LinkModel"]
