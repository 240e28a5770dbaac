"""Example scenarios for the network cell-transmission model.

This module demonstrates:
- A merge of two source links into one bottleneck link
- A diverge with time-varying split ratios
- A turn pocket where vehicles change lanes to reach their turn, with a
  capacity controller metering the entrance

Run this script directly to execute all examples, or import the ``build_*``
functions to reuse the networks.
"""

from ctmnet import (
    LaneGroupSpec,
    LinkFlowOutput,
    LinkVehiclesOutput,
    ModelParams,
    RoadParams,
    Scenario,
)

try:
    import matplotlib.pyplot as plt
    HAS_MATPLOTLIB = True
except ImportError:
    HAS_MATPLOTLIB = False
    print("Note: matplotlib not available. Install with 'pip install matplotlib' for visualizations.")


ROAD = RoadParams(capacity_vphpl=2000.0, speed_kph=90.0, jam_density_vpkpl=150.0)
DT_SEC = 2.0


def build_merge_scenario(upstream_vps: float = 0.9, ramp_vps: float = 0.5) -> Scenario:
    """Two source links (2 lanes and 1 lane) merging into a 2-lane link.

    Links: 1 (mainline source), 2 (ramp source), 3 (merge section), 4 (sink).
    """
    scenario = Scenario()
    for node_id in (1, 2, 3, 4, 5):
        scenario.add_node(node_id)
    scenario.add_link(1, 1, 3, length=200.0, lanes=2, road_params=ROAD)
    scenario.add_link(2, 2, 3, length=150.0, lanes=1, road_params=ROAD)
    scenario.add_link(3, 3, 4, length=500.0, lanes=2, road_params=ROAD)
    scenario.add_link(4, 4, 5, length=200.0, lanes=2, road_params=ROAD)
    scenario.add_road_connection(1, in_link_id=1, out_link_id=3)
    scenario.add_road_connection(2, in_link_id=2, out_link_id=3, out_lanes=(2, 2))
    scenario.add_road_connection(3, in_link_id=3, out_link_id=4, capacity_vph=3000.0)
    scenario.add_commodity(1, name="cars")
    scenario.add_demand(commodity_id=1, link_id=1, profile=upstream_vps)
    scenario.add_demand(commodity_id=1, link_id=2, profile=ramp_vps)
    scenario.add_model("ctm", "ctm", params=ModelParams(dt_sec=DT_SEC, max_cell_length_m=100.0))
    return scenario


def build_diverge_scenario(split_to_offramp=(0.1, 0.4, 0.1)) -> Scenario:
    """A 3-lane link diverging into a 2-lane mainline and a 1-lane off-ramp.

    Links: 1 (source), 2 (diverge section), 3 (mainline sink), 4 (off-ramp
    sink).  The off-ramp share changes every 10 minutes.
    """
    scenario = Scenario()
    for node_id in (1, 2, 3, 4, 5):
        scenario.add_node(node_id)
    scenario.add_link(1, 1, 2, length=200.0, lanes=3, road_params=ROAD)
    scenario.add_link(2, 2, 3, length=600.0, lanes=3, road_params=ROAD)
    scenario.add_link(3, 3, 4, length=200.0, lanes=2, road_params=ROAD)
    scenario.add_link(4, 3, 5, length=200.0, lanes=1, road_params=ROAD)
    scenario.add_road_connection(1, in_link_id=1, out_link_id=2)
    scenario.add_road_connection(2, in_link_id=2, out_link_id=3, in_lanes=(1, 2))
    scenario.add_road_connection(3, in_link_id=2, out_link_id=4, in_lanes=(3, 3), capacity_vph=1500.0)
    scenario.add_commodity(1, name="cars")
    scenario.add_demand(commodity_id=1, link_id=1, profile=1.2)
    scenario.add_split(
        link_id=2,
        commodity_id=1,
        outlink2profile={
            3: [1.0 - share for share in split_to_offramp],
            4: list(split_to_offramp),
        },
        dt=600.0,
    )
    scenario.add_model("ctm", "ctm", params=ModelParams(dt_sec=DT_SEC, max_cell_length_m=100.0))
    return scenario


def build_turn_pocket_scenario(lane_change_model: str = "keep") -> Scenario:
    """A 2-lane link with a right-turn pocket on a third lane.

    Links: 1 (source), 2 (lanes 1-2 full length, lane 3 a 150 m pocket),
    3 (through sink), 4 (right-turn sink).  Vehicles enter link 2 on lanes
    1-2 only and move to the pocket to turn.
    """
    scenario = Scenario()
    for node_id in (1, 2, 3, 4, 5):
        scenario.add_node(node_id)
    scenario.add_link(1, 1, 2, length=200.0, lanes=2, road_params=ROAD)
    scenario.add_link(
        2, 2, 3,
        length=400.0,
        lanes=3,
        road_params=ROAD,
        lanegroups=[
            LaneGroupSpec(start_lane=1, num_lanes=2),
            LaneGroupSpec(start_lane=3, num_lanes=1, length=150.0),
        ],
    )
    scenario.add_link(3, 3, 4, length=200.0, lanes=2, road_params=ROAD)
    scenario.add_link(4, 3, 5, length=200.0, lanes=1, road_params=ROAD)
    scenario.add_road_connection(1, in_link_id=1, out_link_id=2, out_lanes=(1, 2))
    scenario.add_road_connection(2, in_link_id=2, out_link_id=3, in_lanes=(1, 2))
    scenario.add_road_connection(3, in_link_id=2, out_link_id=4, in_lanes=(3, 3), capacity_vph=600.0)
    scenario.add_commodity(1, name="cars")
    scenario.add_demand(commodity_id=1, link_id=1, profile=1.0)
    scenario.add_split(link_id=2, commodity_id=1, outlink2profile={3: 0.7, 4: 0.3})
    scenario.add_model(
        "ctm",
        "ctm",
        params=ModelParams(dt_sec=DT_SEC, max_cell_length_m=100.0, lane_change_model=lane_change_model),
    )
    return scenario


def example_1_merge():
    """Example 1: On-ramp merge into a capacity-limited section."""
    print("\n" + "="*70)
    print("EXAMPLE 1: Merge")
    print("="*70)

    scenario = build_merge_scenario()
    vehicles = scenario.request_output(LinkVehiclesOutput(dt=30.0))
    scenario.run(1800.0)
    result = vehicles.result()

    print(f"\nSimulated duration: {scenario.current_time:.0f} s")
    print("\nFinal vehicles per link:")
    for name in sorted(result.series):
        print(f"  {name}: {result.series[name][-1]:.2f}")
    print(f"\nQueued at the sources: {scenario.get_queue(1) + scenario.get_queue(2):.1f} vehicles")
    print(f"Vehicles that left the network: {scenario.get_link_exit_count(4):.1f}")

    if HAS_MATPLOTLIB:
        plot_link_vehicles(result, "Merge: vehicles per link", "/tmp/ctmnet_example_1.png")

    return result


def example_2_diverge():
    """Example 2: Diverge with a time-varying off-ramp share."""
    print("\n" + "="*70)
    print("EXAMPLE 2: Diverge")
    print("="*70)

    scenario = build_diverge_scenario()
    flows = scenario.request_output(LinkFlowOutput(dt=60.0, link_ids=[3, 4]))
    scenario.run(1800.0)

    print("\nAverage exit flows (veh/h):")
    for name, series in sorted(flows.flows_vph().items()):
        print(f"  {name}: {series.mean():.0f}")
    print(f"\nVehicles on the diverge section: {scenario.get_link_vehicles(2):.2f}")

    if HAS_MATPLOTLIB:
        plot_link_flows(flows, "Diverge: exit flows", "/tmp/ctmnet_example_2.png")

    return flows.result()


def example_3_turn_pocket():
    """Example 3: Turn pocket with lane changes and entrance metering.

    The entrance lane group is capped at 1800 veh/h between minutes 5
    and 10.
    """
    print("\n" + "="*70)
    print("EXAMPLE 3: Turn Pocket with Metering")
    print("="*70)

    scenario = build_turn_pocket_scenario()
    entrance = scenario.get_link(1)

    def meter(sim: Scenario, time_s: float) -> None:
        capacity = 1800.0 if 300.0 <= time_s < 600.0 else None
        for lg_id in sorted(entrance.lanegroups):
            sim.set_lanegroup_capacity(lg_id, capacity)

    scenario.add_controller(meter, dt=60.0)
    vehicles = scenario.request_output(LinkVehiclesOutput(dt=30.0))
    scenario.run(1200.0)
    result = vehicles.result()

    print("\nVehicles per lane group of link 2:")
    for lg in scenario.get_link(2).ordered_lanegroups():
        print(f"  lanes {lg.start_lane}-{lg.end_lane}: {lg.total_vehicles():.2f} "
              f"in {len(lg.cells)} cells")
    print(f"\nThrough exits: {scenario.get_link_exit_count(3):.1f} vehicles")
    print(f"Turn exits:    {scenario.get_link_exit_count(4):.1f} vehicles")
    print(f"Source queue:  {scenario.get_queue(1):.1f} vehicles")

    if HAS_MATPLOTLIB:
        plot_link_vehicles(result, "Turn pocket: vehicles per link", "/tmp/ctmnet_example_3.png")

    return result


# Plotting functions
def plot_link_vehicles(result, title, path):
    """Plot the vehicles on every link over time."""
    fig, ax = plt.subplots(1, 1, figsize=(12, 5))

    time = result.time_vector() / 60.0
    for name in sorted(result.series):
        ax.plot(time, result.values(name), label=name, linewidth=2)
    ax.set_xlabel('Time (min)')
    ax.set_ylabel('Vehicles')
    ax.set_title(title)
    ax.legend(loc='best')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(path, dpi=100)
    print(f"\nPlot saved to: {path}")
    plt.close()


def plot_link_flows(output, title, path):
    """Plot the interval exit flows of a LinkFlowOutput."""
    fig, ax = plt.subplots(1, 1, figsize=(12, 5))

    interval_starts = [t / 60.0 for t in output.times[:-1]]
    for name, series in sorted(output.flows_vph().items()):
        ax.plot(interval_starts, series, label=name, linewidth=2)
    ax.set_xlabel('Time (min)')
    ax.set_ylabel('Flow (veh/h)')
    ax.set_title(title)
    ax.legend(loc='best')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(path, dpi=100)
    print(f"\nPlot saved to: {path}")
    plt.close()


def main():
    """Run all examples."""
    print("\n" + "="*70)
    print("NETWORK CTM EXAMPLES")
    print("="*70)

    example_1_merge()
    example_2_diverge()
    example_3_turn_pocket()

    print("\n" + "="*70)
    print("ALL EXAMPLES COMPLETED")
    print("="*70)

    if HAS_MATPLOTLIB:
        print("\nVisualization plots have been saved to /tmp/")
    else:
        print("\nTip: Install matplotlib to generate visualization plots:")
        print("  pip install matplotlib")


if __name__ == "__main__":
    main()
