"""Tests for scenario assembly, routing and controller hooks.

This test suite validates:
- Configuration errors raised while a scenario is assembled or initialised
- Routing of path-full and link-local commodities through a diverge
- Time-varying split ratios and split-ratio overrides
- Controller scheduling and the actuator hooks
"""

import unittest

from ctmnet.errors import ConfigurationError, UnimplementedFeatureError
from ctmnet.examples_network import build_diverge_scenario, build_turn_pocket_scenario
from ctmnet.keys import Side, State
from ctmnet.models import ModelParams
from ctmnet.road import RoadParams
from ctmnet.scenario import Scenario

ROAD = RoadParams(capacity_vphpl=1800.0, speed_kph=72.0, jam_density_vpkpl=150.0)
PARAMS = ModelParams(dt_sec=2.0, max_cell_length_m=100.0)


def build_diverge(connect_to_4=True):
    """Source link 1 -> link 2 diverging to sink links 3 and 4.

    Commodities are added by the tests; no model is added.
    """
    scenario = Scenario()
    for node_id in (1, 2, 3, 4, 5):
        scenario.add_node(node_id)
    scenario.add_link(1, 1, 2, length=200.0, lanes=1, road_params=ROAD)
    scenario.add_link(2, 2, 3, length=400.0, lanes=2, road_params=ROAD)
    scenario.add_link(3, 3, 4, length=200.0, lanes=1, road_params=ROAD)
    scenario.add_link(4, 3, 5, length=200.0, lanes=1, road_params=ROAD)
    scenario.add_road_connection(1, in_link_id=1, out_link_id=2)
    scenario.add_road_connection(2, in_link_id=2, out_link_id=3)
    if connect_to_4:
        scenario.add_road_connection(3, in_link_id=2, out_link_id=4)
    return scenario


def build_split_diverge(connect_to_4=True, splits=None):
    scenario = build_diverge(connect_to_4)
    scenario.add_commodity(1)
    scenario.add_demand(commodity_id=1, link_id=1, profile=0.3)
    scenario.add_split(link_id=2, commodity_id=1, outlink2profile=splits or {3: 0.5, 4: 0.5})
    scenario.add_model("ctm", "ctm", params=PARAMS)
    return scenario


class TestAssembly(unittest.TestCase):
    """Test configuration errors."""

    def test_unimplemented_model_type(self):
        scenario = build_diverge()
        with self.assertRaises(UnimplementedFeatureError):
            scenario.add_model("queue", "spatialq", params=PARAMS)

    def test_unknown_model_type(self):
        scenario = build_diverge()
        with self.assertRaises(ConfigurationError):
            scenario.add_model("other", "bogus", params=PARAMS)

    def test_unassigned_link(self):
        """Test that every link must belong to a model."""
        scenario = build_diverge()
        scenario.add_commodity(1)
        scenario.add_model("ctm", "ctm", link_ids=[1, 2, 3], params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 4)

    def test_link_in_two_models(self):
        scenario = build_diverge()
        scenario.add_model("a", "ctm", link_ids=[1, 2, 3, 4], params=PARAMS)
        scenario.add_model("b", "ctm", link_ids=[1], params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 1)

    def test_node_shared_between_models(self):
        """Test that a junction cannot join links of two models."""
        scenario = build_diverge()
        scenario.add_model("a", "ctm", link_ids=[1, 2], params=PARAMS)
        scenario.add_model("b", "ctm", link_ids=[3, 4], params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 3)

    def test_split_towards_unreachable_link(self):
        """Test that a positive split with no road connection names the link and the outlink."""
        scenario = build_split_diverge(connect_to_4=False)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 2)
        self.assertEqual(ctx.exception.outlink_id, 4)
        self.assertIn("outlink=4", str(ctx.exception))

    def test_later_split_towards_unreachable_link(self):
        """Test that a split turning towards an unreachable link later on fails at initialisation."""
        scenario = build_diverge(connect_to_4=False)
        scenario.add_commodity(1)
        scenario.add_demand(commodity_id=1, link_id=1, profile=0.3)
        scenario.add_split(link_id=2, commodity_id=1, outlink2profile={3: [1.0, 0.5], 4: [0.0, 0.5]}, dt=60.0)
        scenario.add_model("ctm", "ctm", params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 2)
        self.assertEqual(ctx.exception.outlink_id, 4)

    def test_zero_split_towards_unreachable_link(self):
        """Test that an unreachable link is accepted while every sample sends nothing to it."""
        scenario = build_split_diverge(connect_to_4=False, splits={3: 1.0, 4: [0.0, 0.0]})
        scenario.initialize()
        scenario.advance(120.0)
        self.assertGreater(scenario.get_link_vehicles(2), 0.0)

    def test_split_towards_link_elsewhere(self):
        scenario = build_split_diverge(splits={3: 0.5, 1: 0.5})
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.outlink_id, 1)

    def test_non_linear_path(self):
        """Test that a path whose links do not chain is rejected with its id."""
        scenario = build_diverge()
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.add_path(5, [1, 3])
        self.assertEqual(ctx.exception.subnetwork_id, 5)

    def test_path_without_road_connection(self):
        scenario = build_diverge(connect_to_4=False)
        scenario.add_commodity(1, pathfull=True)
        scenario.add_path(7, [1, 2, 4])
        scenario.add_demand(commodity_id=1, link_id=1, profile=0.3, path_id=7)
        scenario.add_model("ctm", "ctm", params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual((ctx.exception.link_id, ctx.exception.outlink_id), (2, 4))
        self.assertEqual(ctx.exception.subnetwork_id, 7)

    def test_demand_on_interior_link(self):
        scenario = build_diverge()
        scenario.add_commodity(1)
        scenario.add_demand(commodity_id=1, link_id=2, profile=0.3)
        scenario.add_split(link_id=2, commodity_id=1, outlink2profile={3: 1.0})
        scenario.add_model("ctm", "ctm", params=PARAMS)
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.initialize()
        self.assertEqual(ctx.exception.link_id, 2)

    def test_pathfull_demand_needs_path(self):
        scenario = build_diverge()
        scenario.add_commodity(1, pathfull=True)
        scenario.add_demand(commodity_id=1, link_id=1, profile=0.3)
        scenario.add_model("ctm", "ctm", params=PARAMS)
        with self.assertRaises(ConfigurationError):
            scenario.initialize()

    def test_lifecycle(self):
        """Test that a scenario is edited before initialisation and advanced after it."""
        scenario = build_split_diverge()
        with self.assertRaises(ConfigurationError):
            scenario.advance(10.0)
        scenario.initialize()
        with self.assertRaises(ConfigurationError):
            scenario.add_node(99)
        with self.assertRaises(ConfigurationError):
            scenario.initialize()
        scenario.advance(10.0)
        self.assertEqual(scenario.current_time, 10.0)


class TestRouting(unittest.TestCase):
    """Test how commodities choose their outlink at a diverge."""

    def test_path_and_split_commodities(self):
        """Test that path vehicles follow their path while split vehicles follow the ratios."""
        scenario = build_diverge()
        scenario.add_commodity(1, pathfull=True)
        scenario.add_commodity(2)
        scenario.add_path(7, [1, 2, 4])
        scenario.add_demand(commodity_id=1, link_id=1, profile=0.1, path_id=7)
        scenario.add_demand(commodity_id=2, link_id=1, profile=0.2)
        scenario.add_split(link_id=2, commodity_id=2, outlink2profile={3: 1.0, 4: 0.0})
        scenario.add_model("ctm", "ctm", params=PARAMS)
        scenario.initialize()
        scenario.advance(600.0)

        self.assertGreater(scenario.get_link_exit_count(4, commodity_id=1), 0.0)
        self.assertEqual(scenario.get_link_exit_count(3, commodity_id=1), 0.0)
        self.assertGreater(scenario.get_link_exit_count(3, commodity_id=2), 0.0)
        self.assertEqual(scenario.get_link_exit_count(4, commodity_id=2), 0.0)
        self.assertAlmostEqual(scenario.get_link_exit_count(4) / 0.1, scenario.get_link_exit_count(3) / 0.2, delta=2.0)

    def test_time_varying_splits(self):
        """Test that the off-ramp receives more vehicles while its share is higher."""
        scenario = build_diverge_scenario(split_to_offramp=(0.1, 0.4))
        scenario.initialize()
        scenario.advance(600.0)
        first = scenario.get_link_exit_count(4)
        scenario.advance(600.0)
        second = scenario.get_link_exit_count(4) - first
        self.assertGreater(second, 2.0 * first)

    def test_split_override(self):
        """Test that an override redirects new vehicles and clearing it restores the profile."""
        scenario = build_split_diverge()
        scenario.initialize()
        scenario.advance(300.0)
        self.assertGreater(scenario.get_link_exit_count(4), 0.0)

        scenario.set_split_ratios(2, 1, {3: 1.0, 4: 0.0})
        scenario.advance(120.0)
        to_3 = scenario.get_link_exit_count(3)
        to_4 = scenario.get_link_exit_count(4)
        scenario.advance(300.0)
        self.assertLess(scenario.get_link_exit_count(4) - to_4, 1e-3)
        self.assertGreater(scenario.get_link_exit_count(3) - to_3, 50.0)

        scenario.set_split_ratios(2, 1, None)
        to_4 = scenario.get_link_exit_count(4)
        scenario.advance(300.0)
        self.assertGreater(scenario.get_link_exit_count(4) - to_4, 20.0)

    def test_split_override_errors(self):
        scenario = build_split_diverge()
        scenario.initialize()
        with self.assertRaises(ConfigurationError):
            scenario.set_split_ratios(1, 1, {2: 1.0})  # link 1 does not diverge
        with self.assertRaises(ConfigurationError) as ctx:
            scenario.set_split_ratios(2, 1, {1: 1.0})
        self.assertEqual(ctx.exception.outlink_id, 1)


class TestControllers(unittest.TestCase):
    """Test controller scheduling and actuator hooks."""

    def test_controller_schedule(self):
        """Test that controllers run every dt from the start, before the model step."""
        scenario = build_split_diverge()
        seen = {}

        def record(sim, time_s):
            seen[time_s] = sim.total_vehicles()

        scenario.add_controller(record, dt=2.0)
        scenario.run(10.0)

        self.assertEqual(sorted(seen), [0.0, 2.0, 4.0, 6.0, 8.0, 10.0])
        self.assertEqual(seen[2.0], 0.0)
        self.assertGreater(seen[4.0], 0.0)

    def test_invalid_controller_dt(self):
        scenario = build_split_diverge()
        with self.assertRaises(ValueError):
            scenario.add_controller(lambda sim, time_s: None, dt=0.0)

    def test_capacity_controller(self):
        """Test that a controller closing link 2 stops the flow into it."""
        scenario = build_split_diverge()

        def close(sim, time_s):
            for lg in sim.get_link(2).ordered_lanegroups():
                sim.set_lanegroup_capacity(lg.id, 0.0 if time_s < 300.0 else None)

        scenario.add_controller(close, dt=60.0)
        scenario.initialize()
        scenario.advance(298.0)
        self.assertEqual(scenario.get_link_vehicles(2), 0.0)
        self.assertGreater(scenario.get_link_vehicles(1), 0.0)
        scenario.advance(120.0)
        self.assertGreater(scenario.get_link_vehicles(2), 0.0)

    def test_reset_clears_capacity(self):
        """Test that a rerun after reset starts again from the road capacity."""
        scenario = build_split_diverge()
        scenario.initialize()
        lg = scenario.get_link(2).ordered_lanegroups()[0]
        scenario.set_lanegroup_capacity(lg.id, 0.0)
        scenario.advance(120.0)
        self.assertEqual(scenario.get_link_vehicles(2), 0.0)

        scenario.reset()
        scenario.initialize()
        self.assertIsNone(lg.actuator_capacity_vps)
        for cell in lg.cells:
            self.assertAlmostEqual(cell.capacity_vps, cell.fd.capacity_vps * cell.lanes)
        scenario.advance(120.0)
        self.assertGreater(scenario.get_link_vehicles(2), 0.0)

    def test_lane_change_restriction(self):
        """Test that a lane-change restriction replaces the directions of a key."""
        scenario = build_turn_pocket_scenario()
        scenario.initialize()
        full = scenario.get_link(2).ordered_lanegroups()[0]
        self.assertEqual(dict(full.get_lanechange_probabilities(State(1, 4))), {Side.OUT: 1.0})

        scenario.set_lane_change_options(full.id, 1, 4, [Side.MIDDLE])
        scenario.advance(20.0)
        self.assertEqual(dict(full.get_lanechange_probabilities(State(1, 4))), {Side.MIDDLE: 1.0})
        for cell in full.cells:
            self.assertNotIn(State(1, 4), cell.demand_lc[Side.OUT])

    def test_lane_change_restriction_without_selector(self):
        scenario = build_turn_pocket_scenario()
        scenario.initialize()
        entrance = scenario.get_link(1).ordered_lanegroups()[0]
        with self.assertRaises(ConfigurationError):
            scenario.set_lane_change_options(entrance.id, 1, 2, [Side.MIDDLE])


if __name__ == "__main__":
    unittest.main()
