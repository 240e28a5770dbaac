"""A cell: one spatial slice of a lane group holding fluid vehicle mass."""

from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional

from .errors import InvariantViolation
from .keys import Side, State
from .road import FundamentalDiagram

# Absolute tolerance (vehicles) for floating-point drift in counts.
VEHICLE_TOLERANCE = 1e-6

ProbabilityLookup = Callable[[State], Optional[Mapping[Side, float]]]


class Cell:
    """Per-State vehicle counts for one cell of a lane group.

    Counts are fluid (real-valued).  ``demand`` and ``supply`` are rates in
    veh/s; ``add_vehicles`` and ``release_vehicles`` take vehicle amounts,
    i.e. rates already multiplied by the time step.
    """

    def __init__(
            self,
            length_m: float,
            lanes: int,
            fd: FundamentalDiagram,
            dt: Optional[float] = None,
    ) -> None:
        if length_m <= 0:
            raise ValueError("Cell length must be positive.")
        if lanes <= 0:
            raise ValueError("Number of lanes must be positive.")
        if dt is not None and dt <= 0:
            raise ValueError("Time step must be positive.")
        self.length = float(length_m)
        self.lanes = int(lanes)
        self.fd = fd
        self.dt = dt
        self.max_vehicles = fd.jam_density_vpm * self.lanes * self.length
        self.capacity_vps = fd.capacity_vps * self.lanes

        self.veh: Dict[State, float] = {}

        # per-step working values, written in phase I
        self.demand_dwn: Dict[State, float] = {}
        self.demand_lc: Dict[Side, Dict[State, float]] = {Side.IN: {}, Side.OUT: {}}
        self.supply_snapshot = 0.0

    def __repr__(self) -> str:
        return f"Cell(length={self.length:.2f}, lanes={self.lanes}, veh={self.total_vehicles():.3f})"

    def total_vehicles(self) -> float:
        return sum(self.veh.values())

    def set_capacity_vps(self, capacity_vps: Optional[float]) -> None:
        """Override the capacity; ``None`` restores the road value."""
        if capacity_vps is None:
            self.capacity_vps = self.fd.capacity_vps * self.lanes
        else:
            self.capacity_vps = max(0.0, float(capacity_vps))

    def demand(self, probabilities: Optional[ProbabilityLookup] = None) -> Dict[State, float]:
        """Sendable flow this step, State -> veh/s.

        Every state can send ``ffspeed / length`` of its vehicles per second,
        and never more than it holds within one step ``dt`` when the cell
        knows its time step.
        That amount is split by the state's lane-change probabilities into a
        longitudinal part (returned and kept in ``demand_dwn``) and lateral
        parts (kept in ``demand_lc``).  The longitudinal total is capped at
        the cell capacity.
        """
        rate = self.fd.ffspeed_mps / self.length
        demand_dwn: Dict[State, float] = {}
        demand_lc: Dict[Side, Dict[State, float]] = {Side.IN: {}, Side.OUT: {}}

        for state in sorted(self.veh):
            vehicles = self.veh[state]
            if vehicles <= 0:
                continue
            sendable = rate * vehicles
            if self.dt is not None:
                sendable = min(sendable, vehicles / self.dt)
            probs = probabilities(state) if probabilities is not None else None
            if not probs:
                demand_dwn[state] = sendable
                continue
            for side, prob in probs.items():
                if prob <= 0:
                    continue
                if side is Side.MIDDLE:
                    demand_dwn[state] = sendable * prob
                else:
                    demand_lc[side][state] = sendable * prob

        total = sum(demand_dwn.values())
        if total > self.capacity_vps:
            ratio = self.capacity_vps / total
            demand_dwn = {state: flow * ratio for state, flow in demand_dwn.items()}

        self.demand_dwn = demand_dwn
        self.demand_lc = demand_lc
        return demand_dwn

    def supply(self) -> float:
        """Receivable flow this step, veh/s, from the current occupancy."""
        space = self.max_vehicles - self.total_vehicles()
        congested = self.fd.wspeed_mps / self.length * space
        if self.dt is not None:
            congested = min(congested, space / self.dt)
        return max(0.0, min(self.capacity_vps, congested))

    def add_vehicles(self, vehicles: Mapping[State, float]) -> None:
        """Add vehicle amounts; the caller has already bounded them by supply."""
        for state, amount in vehicles.items():
            if amount <= 0:
                continue
            self.veh[state] = self.veh.get(state, 0.0) + amount

    def release_vehicles(self, vehicles: Mapping[State, float]) -> None:
        """Remove vehicle amounts, failing if a count would turn negative."""
        for state, amount in vehicles.items():
            if amount <= 0:
                continue
            remaining = self.veh.get(state, 0.0) - amount
            if remaining < -VEHICLE_TOLERANCE:
                raise InvariantViolation(
                    f"Releasing {amount:.6f} vehicles of {state} leaves {remaining:.6f} in {self!r}."
                )
            self.veh[state] = max(0.0, remaining)

    def reset(self) -> None:
        self.veh.clear()
        self.demand_dwn = {}
        self.demand_lc = {Side.IN: {}, Side.OUT: {}}
        self.supply_snapshot = 0.0


__all__ = ["Cell", "VEHICLE_TOLERANCE"]
