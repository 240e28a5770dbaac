"""Model interface and the registry of model types.

A scenario assigns every link to exactly one model.  The model type is a
string tag resolved once, when the scenario is assembled, through
:data:`MODEL_REGISTRY`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from .errors import ConfigurationError, UnimplementedFeatureError

if TYPE_CHECKING:  # pragma: no cover
    from .dispatcher import Dispatcher
    from .network import Commodity, Link, Network, Path
    from .profiles import DemandProfile
    from .source import FluidSource


@dataclass(frozen=True)
class ModelParams:
    """Static parameters of a model.

    - dt_sec: Simulation step in seconds (must be > 0).
    - max_cell_length_m: Longest allowed cell.  ``None`` uses the free-flow
      distance travelled in one step.
    - lane_change_model: Lane selector policy, one of ``"keep"``,
      ``"uniform"`` or ``"supply"``.
    - lane_change_dt_sec: Refresh interval of the lane selectors.  ``0``
      refreshes every step, a negative value computes them once.
    """

    dt_sec: float
    max_cell_length_m: Optional[float] = None
    lane_change_model: str = "keep"
    lane_change_dt_sec: float = 0.0

    def __post_init__(self) -> None:
        if self.dt_sec <= 0:
            raise ValueError("dt_sec must be positive.")
        if self.max_cell_length_m is not None and self.max_cell_length_m <= 0:
            raise ValueError("max_cell_length_m must be positive.")


class Model(ABC):
    """A set of links advanced together by one simulation method."""

    model_type = ""

    def __init__(self, name: str, link_ids: Iterable[int], params: ModelParams) -> None:
        self.name = name
        self.link_ids: List[int] = sorted(set(link_ids))
        if not self.link_ids:
            raise ConfigurationError(f"Model '{name}' has no links.")
        self.params = params
        self.network: Optional["Network"] = None

    @property
    def dt(self) -> float:
        return self.params.dt_sec

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, links={len(self.link_ids)})"

    @abstractmethod
    def set_links(self, network: "Network") -> None:
        """Take ownership of the model's links in ``network``."""

    @abstractmethod
    def build(self) -> None:
        """Create the model's internal structures; called once per initialisation."""

    @abstractmethod
    def reset(self) -> None:
        """Remove every vehicle from the model."""

    @abstractmethod
    def register_with_dispatcher(self, dispatcher: "Dispatcher", start_time: float) -> None:
        ...

    @abstractmethod
    def update_flow(self, timestamp: float) -> None:
        ...

    @abstractmethod
    def create_source(
            self,
            link: "Link",
            demand_profile: "DemandProfile",
            commodity: "Commodity",
            path: Optional["Path"],
    ) -> "FluidSource":
        ...


ModelFactory = Callable[[str, Iterable[int], ModelParams], Model]

MODEL_REGISTRY: Dict[str, ModelFactory] = {}


def register_model(tag: str) -> Callable[[ModelFactory], ModelFactory]:
    """Class decorator adding a model type to :data:`MODEL_REGISTRY`."""

    def decorator(factory: ModelFactory) -> ModelFactory:
        if tag in MODEL_REGISTRY:
            raise ValueError(f"Model type '{tag}' is already registered.")
        MODEL_REGISTRY[tag] = factory
        if isinstance(factory, type):
            factory.model_type = tag  # type: ignore[attr-defined]
        return factory

    return decorator


# recognised model types without an implementation
UNIMPLEMENTED_MODEL_TYPES = ("spatialq", "newell", "micro")


def resolve_model_type(tag: str) -> ModelFactory:
    """Constructor of a model type; fails for unknown and unimplemented types."""
    if tag in UNIMPLEMENTED_MODEL_TYPES:
        raise UnimplementedFeatureError(f"{tag} model")
    try:
        return MODEL_REGISTRY[tag]
    except KeyError:
        raise ConfigurationError(f"Unknown model type '{tag}'.") from None


def create_model(tag: str, name: str, link_ids: Iterable[int], params: ModelParams) -> Model:
    return resolve_model_type(tag)(name, link_ids, params)


__all__ = [
    "MODEL_REGISTRY",
    "Model",
    "ModelParams",
    "UNIMPLEMENTED_MODEL_TYPES",
    "create_model",
    "register_model",
    "resolve_model_type",
]
