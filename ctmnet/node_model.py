"""Junction flow resolution.

For every step the node model

1. collects the longitudinal demand of the downstream cell of every incoming
   lane group and assigns it to the road connection leading to each state's
   next link,
2. collects the supply of the upstream cell of every outgoing lane group,
3. resolves the flows: each road connection is capped by its capacity, its
   demand is split across its downstream lane groups in proportion to their
   supply, and the most restrictive downstream lane group is found and
   frozen repeatedly until every remaining connection can send in full,
4. commits the resulting flows per road connection and state (``f_rs``),
   per road connection and downstream lane group (``f_rj``) and per incoming
   lane group and state (``f_gs``).

The node model never touches a cell.  The fluid model applies the committed
flows in phase II through :meth:`NodeModel.get_packets` and
:meth:`NodeModel.get_releases`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .errors import InvariantViolation
from .keys import State
from .packets import PacketLink

if TYPE_CHECKING:  # pragma: no cover
    from .lanegroup import LaneGroup
    from .network import Network, Node, RoadConnection

# Relative tolerance of the supply check.
_SUPPLY_TOLERANCE = 1e-9


class UpLaneGroup:
    """Incoming lane group and its per-step exit flows."""

    def __init__(self, lg: "LaneGroup") -> None:
        self.lg = lg
        self.f_gs: Dict[State, float] = {}

    def reset(self) -> None:
        self.f_gs = {}


class DnLaneGroup:
    """Outgoing lane group and its per-step supply."""

    def __init__(self, lg: "LaneGroup") -> None:
        self.lg = lg
        self.supply = 0.0
        self.remaining_supply = 0.0
        self.inflow = 0.0

    def reset(self) -> None:
        self.supply = 0.0
        self.remaining_supply = 0.0
        self.inflow = 0.0


class RoadConnectionFlow:
    """Flow of one road connection out of one of its incoming lane groups.

    A road connection that starts on several lane groups is resolved as one
    of these per lane group; its capacity is shared by lane count.
    """

    def __init__(
            self,
            rc: "RoadConnection",
            up: UpLaneGroup,
            dns: List[DnLaneGroup],
            capacity_vps: Optional[float],
    ) -> None:
        self.rc = rc
        self.up = up
        self.dns = dns
        self.capacity_vps = capacity_vps

        self.demand_s: Dict[State, float] = {}
        self.demand = 0.0
        self.lambda_j: Dict[int, float] = {}
        self.alpha: Optional[float] = None
        self.f_rs: Dict[State, float] = {}
        self.f_rj: Dict[int, float] = {}

    @property
    def key(self) -> Tuple[int, int]:
        return self.rc.id, self.up.lg.id

    def reset(self) -> None:
        self.demand_s = {}
        self.demand = 0.0
        self.lambda_j = {}
        self.alpha = None
        self.f_rs = {}
        self.f_rj = {}


class NodeModel:
    """Flow resolution at one node of a fluid model."""

    def __init__(self, node: "Node", network: "Network") -> None:
        self.node = node
        self.network = network
        self.ulgs: Dict[int, UpLaneGroup] = {}
        self.dlgs: Dict[int, DnLaneGroup] = {}
        self.rcs: List[RoadConnectionFlow] = []

    @property
    def id(self) -> int:
        return self.node.id

    def __repr__(self) -> str:
        return f"NodeModel(node={self.node.id}, connections={len(self.rcs)})"

    def build(self) -> None:
        network = self.network
        self.ulgs = {}
        self.dlgs = {}
        self.rcs = []

        for link_id in sorted(self.node.in_link_ids):
            for lg_id in sorted(network.links[link_id].lanegroups):
                self.ulgs[lg_id] = UpLaneGroup(network.lanegroups[lg_id])

        in_links = set(self.node.in_link_ids)
        for rc_id in sorted(network.road_connections):
            rc = network.road_connections[rc_id]
            if rc.in_link_id not in in_links:
                continue
            dns = []
            for lg_id in sorted(rc.out_lanegroup_ids):
                if lg_id not in self.dlgs:
                    self.dlgs[lg_id] = DnLaneGroup(network.lanegroups[lg_id])
                dns.append(self.dlgs[lg_id])

            in_lgs = [network.lanegroups[lg_id] for lg_id in sorted(rc.in_lanegroup_ids)]
            total_lanes = sum(lg.num_lanes for lg in in_lgs)
            for lg in in_lgs:
                capacity = None
                if rc.capacity_vph is not None:
                    capacity = rc.capacity_vph / 3600.0 * lg.num_lanes / total_lanes
                self.rcs.append(RoadConnectionFlow(rc, self.ulgs[lg.id], dns, capacity))

        self.rcs.sort(key=lambda rcf: rcf.key)

    def reset(self) -> None:
        for ulg in self.ulgs.values():
            ulg.reset()
        for dlg in self.dlgs.values():
            dlg.reset()
        for rcf in self.rcs:
            rcf.reset()

    ###############################################
    # phase I
    ###############################################

    def update_flow(self, timestamp: float) -> None:
        self.reset()
        self._collect_demand()
        self._collect_supply()
        self._resolve()
        self._commit()

    def _collect_demand(self) -> None:
        by_key = {rcf.key: rcf for rcf in self.rcs}
        for lg_id, ulg in sorted(self.ulgs.items()):
            lg = ulg.lg
            for state, flow in sorted(lg.get_demand().items()):
                if flow <= 0:
                    continue
                next_link_id = self.network.next_link_id(lg.link_id, state)
                rc_id = lg.outlink2roadconnection.get(next_link_id)
                if rc_id is None:
                    # held in place until the vehicles change lanes
                    continue
                rcf = by_key[(rc_id, lg_id)]
                rcf.demand_s[state] = rcf.demand_s.get(state, 0.0) + flow

        for rcf in self.rcs:
            total = sum(rcf.demand_s.values())
            if rcf.capacity_vps is not None and total > rcf.capacity_vps:
                ratio = rcf.capacity_vps / total
                rcf.demand_s = {state: flow * ratio for state, flow in rcf.demand_s.items()}
                total = rcf.capacity_vps
            rcf.demand = total

    def _collect_supply(self) -> None:
        for dlg in self.dlgs.values():
            dlg.supply = dlg.lg.get_supply()
            dlg.remaining_supply = dlg.supply

        for rcf in self.rcs:
            total = sum(dn.supply for dn in rcf.dns)
            if not rcf.dns:
                continue
            if total > 0:
                rcf.lambda_j = {dn.lg.id: dn.supply / total for dn in rcf.dns}
            else:
                rcf.lambda_j = {dn.lg.id: 1.0 / len(rcf.dns) for dn in rcf.dns}

    def _resolve(self) -> None:
        active = [rcf for rcf in self.rcs if rcf.demand > 0 and rcf.lambda_j]
        for rcf in self.rcs:
            if rcf not in active:
                rcf.alpha = 0.0

        while active:
            restrictive = self._most_restrictive(active)
            if restrictive is None:
                break
            ratio, restrictive_id = restrictive
            if ratio >= 1.0:
                break

            frozen = [rcf for rcf in active if rcf.lambda_j.get(restrictive_id, 0.0) > 0]
            for rcf in frozen:
                rcf.alpha = ratio
                for lg_id, share in rcf.lambda_j.items():
                    dlg = self.dlgs[lg_id]
                    dlg.remaining_supply = max(0.0, dlg.remaining_supply - ratio * rcf.demand * share)
            active = [rcf for rcf in active if rcf not in frozen]

        for rcf in active:
            rcf.alpha = 1.0

    def _most_restrictive(self, active: List[RoadConnectionFlow]) -> Optional[Tuple[float, int]]:
        """Smallest remaining-over-requested supply ratio and its lane group.

        Ties go to the lane group fed by the road connection with the smallest key.
        """
        requested: Dict[int, float] = {}
        feeders: Dict[int, Tuple[int, int]] = {}
        for rcf in active:
            for lg_id, share in rcf.lambda_j.items():
                if share > 0:
                    requested[lg_id] = requested.get(lg_id, 0.0) + rcf.demand * share
                    feeders[lg_id] = min(feeders.get(lg_id, rcf.key), rcf.key)

        ratios = [
            (self.dlgs[lg_id].remaining_supply / amount, feeders[lg_id], lg_id)
            for lg_id, amount in requested.items()
            if amount > 0
        ]
        if not ratios:
            return None
        ratio, _, lg_id = min(ratios)
        return ratio, lg_id

    def _commit(self) -> None:
        for rcf in self.rcs:
            alpha = rcf.alpha or 0.0
            if alpha <= 0:
                continue
            rcf.f_rs = {state: flow * alpha for state, flow in rcf.demand_s.items()}
            rcf.f_rj = {lg_id: rcf.demand * alpha * share for lg_id, share in rcf.lambda_j.items()}

            f_gs = rcf.up.f_gs
            for state, flow in rcf.f_rs.items():
                f_gs[state] = f_gs.get(state, 0.0) + flow

            for lg_id, flow in rcf.f_rj.items():
                self.dlgs[lg_id].inflow += flow

        for lg_id, dlg in sorted(self.dlgs.items()):
            if dlg.inflow > dlg.supply * (1.0 + _SUPPLY_TOLERANCE) + _SUPPLY_TOLERANCE:
                raise InvariantViolation(
                    f"Node {self.node.id} sends {dlg.inflow:.6f} veh/s into lane group "
                    f"{lg_id} whose supply is {dlg.supply:.6f} veh/s."
                )

    ###############################################
    # phase II
    ###############################################

    def get_packets(self, dt: float) -> List[Tuple[int, PacketLink]]:
        """Committed flows as vehicle packets, ``(out_link_id, packet)``.

        One packet per road connection and downstream lane group, arriving on
        that lane group.
        """
        packets: List[Tuple[int, PacketLink]] = []
        for rcf in self.rcs:
            if not rcf.f_rs:
                continue
            for dn in rcf.dns:
                share = rcf.lambda_j.get(dn.lg.id, 0.0)
                if share <= 0:
                    continue
                vehicles = {state: flow * share * dt for state, flow in rcf.f_rs.items() if flow > 0}
                if not vehicles:
                    continue
                packets.append(
                    (rcf.rc.out_link_id, PacketLink(vehicles, [dn.lg], road_connection_id=rcf.rc.id))
                )
        return packets

    def get_releases(self, dt: float) -> List[Tuple["LaneGroup", Dict[State, float]]]:
        """Vehicle amounts leaving each incoming lane group this step."""
        releases = []
        for lg_id, ulg in sorted(self.ulgs.items()):
            if ulg.f_gs:
                releases.append((ulg.lg, {state: flow * dt for state, flow in ulg.f_gs.items()}))
        return releases


__all__ = [
    "DnLaneGroup",
    "NodeModel",
    "RoadConnectionFlow",
    "UpLaneGroup",
]
