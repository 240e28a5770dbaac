"""Road parameters and the triangular fundamental diagram of a lane group."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RoadParams:
    """Traffic parameters of a road, in traffic-engineering units.

    - capacity_vphpl: Per-lane capacity in vehicles per hour (must be > 0).
    - speed_kph: Free-flow speed in km/h (must be > 0).
    - jam_density_vpkpl: Jam density per lane in vehicles per km (must be > 0).

    The critical density ``capacity / speed`` must lie below the jam density,
    otherwise the triangular diagram has no congested branch.
    """

    capacity_vphpl: float
    speed_kph: float
    jam_density_vpkpl: float

    def __post_init__(self) -> None:
        for attr in (self.capacity_vphpl, self.speed_kph, self.jam_density_vpkpl):
            if attr <= 0:
                raise ValueError("Road parameters must be positive.")
        if self.capacity_vphpl / self.speed_kph >= self.jam_density_vpkpl:
            raise ValueError("Critical density must be lower than jam density.")


@dataclass(frozen=True)
class FundamentalDiagram:
    """Triangular fundamental diagram in SI units, per lane.

    - ffspeed_mps: free-flow speed (m/s).
    - capacity_vps: capacity per lane (veh/s).
    - wspeed_mps: backward congestion wave speed (m/s).
    - jam_density_vpm: jam density per lane (veh/m).
    """

    ffspeed_mps: float
    capacity_vps: float
    wspeed_mps: float
    jam_density_vpm: float

    @classmethod
    def from_road_params(cls, params: RoadParams) -> "FundamentalDiagram":
        ffspeed = params.speed_kph / 3.6
        capacity = params.capacity_vphpl / 3600.0
        jam = params.jam_density_vpkpl / 1000.0
        critical = capacity / ffspeed
        return cls(
            ffspeed_mps=ffspeed,
            capacity_vps=capacity,
            wspeed_mps=capacity / (jam - critical),
            jam_density_vpm=jam,
        )

    @property
    def critical_density_vpm(self) -> float:
        return self.capacity_vps / self.ffspeed_mps


__all__ = ["FundamentalDiagram", "RoadParams"]
