"""Unit tests for junction flow resolution.

This test suite validates:
- Proportional sharing of a downstream supply between competing connections
- Road-connection capacity limits
- Supply respect for every downstream lane group
- Independence of connections that do not share a restrictive lane group
- Packets and releases handed to phase II
- Tie-breaking between equally restrictive lane groups
"""

import unittest

from ctmnet.keys import State
from ctmnet.network import LaneGroupSpec, Link, Network, RoadConnection
from ctmnet.node_model import NodeModel
from ctmnet.road import FundamentalDiagram, RoadParams

ROAD = RoadParams(capacity_vphpl=1800.0, speed_kph=72.0, jam_density_vpkpl=150.0)
FD = FundamentalDiagram.from_road_params(ROAD)
TO_3 = State(1, 3)


def build_merge(rc1_capacity_vph=None, dn_lanegroups=None):
    """Links 1 and 2 merging into link 3 at node 3.

    Lane groups: link 1 -> 0, link 2 -> 1, link 3 -> 2 (and 3).
    Every cell is 100 m long with a capacity of 0.5 veh/s per lane.
    """
    network = Network()
    for node_id in (1, 2, 3, 4):
        network.add_node(node_id)
    network.add_link(Link(1, 1, 3, 100.0, 1, ROAD))
    network.add_link(Link(2, 2, 3, 100.0, 1, ROAD))
    lanes = 1 if dn_lanegroups is None else sum(spec.num_lanes for spec in dn_lanegroups)
    network.add_link(Link(3, 3, 4, 100.0, lanes, ROAD, dn_lanegroups))
    network.add_road_connection(RoadConnection(1, 1, 3, capacity_vph=rc1_capacity_vph))
    network.add_road_connection(RoadConnection(2, 2, 3))
    network.build()
    for lg in network.lanegroups.values():
        lg.create_cells(1, FD)
    return network


def resolve(network, node_id=3):
    for lg in network.lanegroups.values():
        lg.compute_demand_supply()
    node_model = NodeModel(network.nodes[node_id], network)
    node_model.build()
    node_model.update_flow(0.0)
    return node_model


class TestNodeModelMerge(unittest.TestCase):
    """Test flow resolution at a merge."""

    def test_uncongested_merge_sends_everything(self):
        network = build_merge()
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 1.0})
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 0.5})
        node_model = resolve(network)
        self.assertAlmostEqual(node_model.ulgs[0].f_gs[TO_3], 0.2)
        self.assertAlmostEqual(node_model.ulgs[1].f_gs[TO_3], 0.1)

    def test_equal_share_when_both_saturated(self):
        """Test that two saturated approaches split the supply equally."""
        network = build_merge()
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 4.0})
        node_model = resolve(network)
        self.assertAlmostEqual(node_model.ulgs[0].f_gs[TO_3], 0.25)
        self.assertAlmostEqual(node_model.ulgs[1].f_gs[TO_3], 0.25)
        self.assertAlmostEqual(node_model.dlgs[2].inflow, 0.5)

    def test_proportional_to_demand(self):
        """Test that the supply is shared in proportion to the requested demand."""
        network = build_merge()
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})  # demand 0.5
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 0.5})  # demand 0.1
        node_model = resolve(network)
        flow_1 = node_model.ulgs[0].f_gs[TO_3]
        flow_2 = node_model.ulgs[1].f_gs[TO_3]
        self.assertAlmostEqual(flow_1 + flow_2, 0.5)
        self.assertAlmostEqual(flow_1 / flow_2, 5.0)

    def test_connection_capacity(self):
        """Test that a road-connection capacity caps its flow."""
        network = build_merge(rc1_capacity_vph=360.0)
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 10.0})
        node_model = resolve(network)
        flow_1 = node_model.ulgs[0].f_gs[TO_3]
        flow_2 = node_model.ulgs[1].f_gs[TO_3]
        self.assertLessEqual(flow_1, 0.1 + 1e-12)
        self.assertLessEqual(flow_1 + flow_2, 0.5 + 1e-12)
        self.assertGreater(flow_2, flow_1)

    def test_supply_respect_with_congested_downstream(self):
        """Test that the inflow never exceeds the downstream supply."""
        network = build_merge()
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[2].cells[0].add_vehicles({State(1, 4): 14.0})
        node_model = resolve(network)
        supply = network.lanegroups[2].get_supply()
        self.assertAlmostEqual(supply, 0.04)
        self.assertLessEqual(node_model.dlgs[2].inflow, supply * (1 + 1e-9))

    def test_split_across_downstream_lanegroups(self):
        """Test that a connection feeds its downstream lane groups in proportion to supply."""
        network = build_merge(dn_lanegroups=[LaneGroupSpec(1, 1), LaneGroupSpec(2, 1)])
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[2].cells[0].add_vehicles({State(1, 4): 10.0})  # supply 0.2
        node_model = resolve(network)

        packets = node_model.get_packets(dt=2.0)
        self.assertEqual([out_link for out_link, _ in packets], [3, 3])
        amounts = {packet.arrive_to_lanegroups[0].id: packet.total() for _, packet in packets}
        self.assertAlmostEqual(amounts[2] + amounts[3], 0.5 * 2.0)
        self.assertAlmostEqual(amounts[3] / amounts[2], 0.5 / 0.2)
        for _, packet in packets:
            self.assertEqual(packet.road_connection_id, 1)

    def test_releases_match_packets(self):
        """Test that released vehicles equal the vehicles sent downstream."""
        network = build_merge()
        network.lanegroups[0].cells[0].add_vehicles({TO_3: 10.0})
        network.lanegroups[1].cells[0].add_vehicles({TO_3: 3.0})
        node_model = resolve(network)
        sent = sum(packet.total() for _, packet in node_model.get_packets(dt=2.0))
        released = sum(sum(vehicles.values()) for _, vehicles in node_model.get_releases(dt=2.0))
        self.assertAlmostEqual(sent, released)
        self.assertAlmostEqual(sent, 1.0)


class TestNodeModelDiverge(unittest.TestCase):
    """Test that a blocked movement does not hold back the other one."""

    def test_blocked_turn(self):
        network = Network()
        for node_id in (1, 2, 3, 4):
            network.add_node(node_id)
        network.add_link(Link(1, 1, 2, 100.0, 2, ROAD))
        network.add_link(Link(2, 2, 3, 100.0, 1, ROAD))
        network.add_link(Link(3, 2, 4, 100.0, 1, ROAD))
        network.add_road_connection(RoadConnection(1, 1, 2))
        network.add_road_connection(RoadConnection(2, 1, 3))
        network.build()
        for lg in network.lanegroups.values():
            lg.create_cells(1, FD)
        to_2, to_3 = State(1, 2), State(1, 3)
        network.lanegroups[0].cells[0].add_vehicles({to_2: 1.5, to_3: 1.5})  # 0.3 veh/s each
        network.lanegroups[1].cells[0].add_vehicles({State(1, 3): 12.5})  # supply 0.1

        node_model = resolve(network, node_id=2)

        f_gs = node_model.ulgs[0].f_gs
        self.assertAlmostEqual(f_gs[to_2], 0.1)
        self.assertAlmostEqual(f_gs[to_3], 0.3)


class TestRestrictiveLaneGroup(unittest.TestCase):
    """Test the choice of the lane group that limits a junction."""

    def test_tie_broken_by_road_connection(self):
        """Test that equally restrictive lane groups are taken in road-connection order."""
        network = Network()
        for node_id in (1, 2, 3, 4):
            network.add_node(node_id)
        network.add_link(Link(1, 1, 3, 100.0, 1, ROAD))
        network.add_link(Link(2, 2, 3, 100.0, 1, ROAD))
        network.add_link(Link(3, 3, 4, 100.0, 2, ROAD, [LaneGroupSpec(1, 1), LaneGroupSpec(2, 1)]))
        # lane group 3 (lane 2) is fed by road connection 1, lane group 2 (lane 1) by 2
        network.add_road_connection(RoadConnection(1, 1, 3, out_lanes=(2, 2)))
        network.add_road_connection(RoadConnection(2, 2, 3, out_lanes=(1, 1)))
        network.build()
        for lg in network.lanegroups.values():
            lg.create_cells(1, FD)
            lg.cells[0].add_vehicles({TO_3: 10.0})
        for lg in network.lanegroups.values():
            lg.compute_demand_supply()

        node_model = NodeModel(network.nodes[3], network)
        node_model.build()
        node_model.reset()
        node_model._collect_demand()
        node_model._collect_supply()
        # both receive 0.2 veh/s against a demand of 0.5
        ratio, lg_id = node_model._most_restrictive(node_model.rcs)
        self.assertAlmostEqual(ratio, 0.4)
        self.assertEqual(lg_id, 3)

        node_model.update_flow(0.0)
        self.assertAlmostEqual(node_model.dlgs[2].inflow, 0.2)
        self.assertAlmostEqual(node_model.dlgs[3].inflow, 0.2)


if __name__ == "__main__":
    unittest.main()
