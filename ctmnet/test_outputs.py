"""Unit tests for sampled outputs."""

import importlib.util
import unittest

import numpy as np

from ctmnet.examples_network import build_merge_scenario
from ctmnet.outputs import (
    CellVehiclesOutput,
    LinkFlowOutput,
    LinkVehiclesOutput,
    OutputCollection,
    SimulationOutput,
)

HAS_PANDAS = importlib.util.find_spec("pandas") is not None


class TestSimulationOutput(unittest.TestCase):
    """Test the result container."""

    def test_length_mismatch(self):
        with self.assertRaises(ValueError):
            SimulationOutput(kind="vehicles", times=[0.0, 10.0], series={"link 1": [1.0]})

    def test_array_in_sorted_location_order(self):
        output = SimulationOutput(
            kind="vehicles",
            times=[0.0, 10.0],
            series={"link 2": [3.0, 4.0], "link 1": [1.0, 2.0]},
        )
        self.assertEqual(output.steps, 2)
        np.testing.assert_array_equal(output.as_array(), [[1.0, 3.0], [2.0, 4.0]])
        np.testing.assert_array_equal(output.time_vector(), [0.0, 10.0])

    @unittest.skipUnless(HAS_PANDAS, "pandas not installed")
    def test_to_dataframe(self):
        output = SimulationOutput(kind="vehicles", times=[0.0, 10.0], series={"link 1": [1.0, 2.0]})
        frame = output.to_dataframe()
        self.assertEqual(frame.index.name, "time_s")
        self.assertEqual(list(frame.columns), [("vehicles", "link 1")])
        self.assertEqual(frame[("vehicles", "link 1")].tolist(), [1.0, 2.0])


class TestOutputRequests(unittest.TestCase):
    """Test sampling during a run."""

    def run_merge(self, *outputs, duration=120.0):
        scenario = build_merge_scenario()
        for output in outputs:
            scenario.request_output(output)
        collection = scenario.run(duration)
        return scenario, collection

    def test_samples_include_initial_state(self):
        """Test that sampling starts at the start time with an empty network."""
        vehicles = LinkVehiclesOutput(dt=30.0)
        scenario, _ = self.run_merge(vehicles)
        result = vehicles.result()
        self.assertEqual(result.times, [0.0, 30.0, 60.0, 90.0, 120.0])
        self.assertEqual(sorted(result.series), ["link 1", "link 2", "link 3", "link 4"])
        self.assertTrue(np.all(result.as_array()[0] == 0.0))
        self.assertAlmostEqual(result.series["link 3"][-1], scenario.get_link_vehicles(3))

    def test_flows_vph(self):
        flows = LinkFlowOutput(dt=60.0, link_ids=[1])
        scenario, _ = self.run_merge(flows, duration=600.0)
        series = flows.flows_vph()["link 1"]
        self.assertEqual(len(series), 10)
        self.assertTrue(np.all(series >= 0.0))
        self.assertAlmostEqual(series.sum() * 60.0 / 3600.0, scenario.get_link_exit_count(1))

    def test_cell_output(self):
        lanegroup_id = 2  # link 3, 5 cells of 100 m
        cells = CellVehiclesOutput(dt=60.0, lanegroup_ids=[lanegroup_id])
        scenario, _ = self.run_merge(cells)
        result = cells.result()
        self.assertEqual(len(result.series), 5)
        final = [result.series[f"lg {lanegroup_id} cell {index}"][-1] for index in range(5)]
        np.testing.assert_allclose(final, scenario.get_cell_vehicles(lanegroup_id))

    def test_collection(self):
        vehicles = LinkVehiclesOutput(dt=60.0)
        flows = LinkFlowOutput(dt=60.0)
        _, collection = self.run_merge(vehicles, flows)
        self.assertIsInstance(collection, OutputCollection)
        self.assertEqual(len(collection.by_kind("vehicles")), 1)
        self.assertEqual(len(collection.by_kind("exit_count")), 1)

    @unittest.skipUnless(HAS_PANDAS, "pandas not installed")
    def test_collection_dataframe(self):
        _, collection = self.run_merge(LinkVehiclesOutput(dt=60.0), LinkFlowOutput(dt=60.0))
        frame = collection.to_dataframe()
        self.assertEqual(frame.shape, (3, 8))
        self.assertEqual(sorted(set(frame.columns.get_level_values("kind"))), ["exit_count", "vehicles"])


if __name__ == "__main__":
    unittest.main()
