"""Time series recorded while a scenario runs.

Output requests sample the network on a fixed interval through
``OUTPUT_SAMPLE`` events, which run after every model update of the same
timestamp.  The first sample is taken at the start time, so every series
includes the initial state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .dispatcher import PRIORITY_OUTPUT, Dispatcher, Event, EventKind

if TYPE_CHECKING:  # pragma: no cover
    import pandas as pd

    from .network import Network


@dataclass
class SimulationOutput:
    """Sampled series of one output request.

    ``series`` maps a location name (``"link 3"``, ``"lg 5 cell 0"``) to the
    values sampled at ``times``.
    """

    kind: str
    times: List[float]
    series: Dict[str, List[float]]
    units: str = ""

    def __post_init__(self) -> None:
        for name, values in self.series.items():
            if len(values) != len(self.times):
                raise ValueError(
                    f"Series '{name}' has length {len(values)}, expected {len(self.times)}."
                )

    @property
    def steps(self) -> int:
        return len(self.times)

    def time_vector(self) -> np.ndarray:
        return np.asarray(self.times, dtype=float)

    def values(self, name: str) -> np.ndarray:
        return np.asarray(self.series[name], dtype=float)

    def as_array(self) -> np.ndarray:
        """Samples as a ``(steps, locations)`` array in sorted location order."""
        names = sorted(self.series)
        if not names:
            return np.zeros((self.steps, 0))
        return np.column_stack([self.values(name) for name in names])

    def to_dataframe(self) -> "pd.DataFrame":
        """Return the samples as a pandas ``DataFrame`` indexed by time.

        Columns form a ``MultiIndex`` ``(kind, location)`` so that frames of
        several outputs can be concatenated side by side.  Requires
        :mod:`pandas`; a ``RuntimeError`` is raised when it is missing.
        """
        try:
            import pandas as pd
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
            raise RuntimeError(
                "pandas is required for `SimulationOutput.to_dataframe()`."
                " Install it with `pip install pandas`."
            ) from exc

        data: Dict[Tuple[str, str], List[float]] = {
            (self.kind, name): values for name, values in sorted(self.series.items())
        }
        frame = pd.DataFrame(data, index=pd.Index(self.times, name="time_s"))
        frame.columns = pd.MultiIndex.from_tuples(frame.columns, names=["kind", "location"])
        return frame


class OutputRequest(ABC):
    """Periodic sampler registered with the dispatcher."""

    kind = ""
    units = ""

    def __init__(self, dt: float) -> None:
        if dt <= 0:
            raise ValueError("Output dt must be positive.")
        self.dt = float(dt)
        self.network: Optional["Network"] = None
        self.times: List[float] = []
        self.series: Dict[str, List[float]] = {}

    def register(self, network: "Network", dispatcher: Dispatcher, start_time: float) -> None:
        self.network = network
        self.reset()
        dispatcher.register_event(start_time, PRIORITY_OUTPUT, EventKind.OUTPUT_SAMPLE, self)

    def reset(self) -> None:
        self.times = []
        self.series = {}

    def handle(self, event: Event) -> Optional[Event]:
        self.times.append(event.timestamp)
        for name, value in self.sample():
            self.series.setdefault(name, []).append(value)
        return Event(event.timestamp + self.dt, PRIORITY_OUTPUT, -1, EventKind.OUTPUT_SAMPLE, self)

    @abstractmethod
    def sample(self) -> Iterable[Tuple[str, float]]:
        """Current ``(location, value)`` pairs."""

    def result(self) -> SimulationOutput:
        return SimulationOutput(
            kind=self.kind,
            times=list(self.times),
            series={name: list(values) for name, values in self.series.items()},
            units=self.units,
        )


class LinkVehiclesOutput(OutputRequest):
    """Vehicles on each link (optionally of one commodity)."""

    kind = "vehicles"
    units = "veh"

    def __init__(self, dt: float, link_ids: Optional[Iterable[int]] = None, commodity_id: Optional[int] = None):
        super().__init__(dt)
        self.link_ids = None if link_ids is None else sorted(link_ids)
        self.commodity_id = commodity_id

    def sample(self) -> Iterable[Tuple[str, float]]:
        link_ids = self.link_ids if self.link_ids is not None else sorted(self.network.links)
        for link_id in link_ids:
            yield f"link {link_id}", self.network.links[link_id].total_vehicles(self.commodity_id)


class LinkFlowOutput(OutputRequest):
    """Cumulative vehicles that left each link (optionally of one commodity).

    :meth:`flows_vph` turns the cumulative counts into interval flows.
    """

    kind = "exit_count"
    units = "veh"

    def __init__(self, dt: float, link_ids: Optional[Iterable[int]] = None, commodity_id: Optional[int] = None):
        super().__init__(dt)
        self.link_ids = None if link_ids is None else sorted(link_ids)
        self.commodity_id = commodity_id

    def sample(self) -> Iterable[Tuple[str, float]]:
        link_ids = self.link_ids if self.link_ids is not None else sorted(self.network.links)
        for link_id in link_ids:
            yield f"link {link_id}", self.network.links[link_id].get_exit_count(self.commodity_id)

    def flows_vph(self) -> Dict[str, np.ndarray]:
        """Flow (veh/h) over each sampling interval, one value fewer than samples."""
        return {
            name: np.diff(np.asarray(values, dtype=float)) / self.dt * 3600.0
            for name, values in self.series.items()
        }


class CellVehiclesOutput(OutputRequest):
    """Vehicles in every cell of the requested lane groups."""

    kind = "cell_vehicles"
    units = "veh"

    def __init__(self, dt: float, lanegroup_ids: Iterable[int]):
        super().__init__(dt)
        self.lanegroup_ids = sorted(lanegroup_ids)

    def sample(self) -> Iterable[Tuple[str, float]]:
        for lg_id in self.lanegroup_ids:
            lg = self.network.lanegroups[lg_id]
            for index, cell in enumerate(lg.cells):
                yield f"lg {lg_id} cell {index}", cell.total_vehicles()


@dataclass
class OutputCollection:
    """Results of every output request of a run, by kind."""

    outputs: List[SimulationOutput] = field(default_factory=list)

    def by_kind(self, kind: str) -> List[SimulationOutput]:
        return [output for output in self.outputs if output.kind == kind]

    def to_dataframe(self) -> "pd.DataFrame":
        try:
            import pandas as pd
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
            raise RuntimeError(
                "pandas is required for `OutputCollection.to_dataframe()`."
                " Install it with `pip install pandas`."
            ) from exc
        if not self.outputs:
            return pd.DataFrame()
        return pd.concat([output.to_dataframe() for output in self.outputs], axis=1)


__all__ = [
    "CellVehiclesOutput",
    "LinkFlowOutput",
    "LinkVehiclesOutput",
    "OutputCollection",
    "OutputRequest",
    "SimulationOutput",
]
