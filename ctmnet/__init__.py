"""Mesoscopic multi-commodity cell-transmission flow propagation.

Typical use goes through :class:`Scenario`: add nodes, links, road
connections, commodities, demands and a ``"ctm"`` model, then
``initialize()`` and ``advance()``.
"""

from .cell import Cell
from .dispatcher import Dispatcher, Event, EventKind
from .errors import ConfigurationError, InvariantViolation, UnimplementedFeatureError
from .fluid_model import FluidModel
from .keys import Side, State
from .lane_selector import KeepLaneSelector, LaneSelector, SupplyLaneSelector, UniformLaneSelector
from .lanegroup import LaneGroup
from .link_model import LinkModel
from .models import MODEL_REGISTRY, Model, ModelParams
from .network import Commodity, LaneGroupSpec, Link, Network, Node, Path, RoadConnection
from .node_model import NodeModel
from .outputs import CellVehiclesOutput, LinkFlowOutput, LinkVehiclesOutput, SimulationOutput
from .packets import PacketLaneGroup, PacketLink, PacketSplitter
from .profiles import DemandProfile, SplitProfile
from .road import FundamentalDiagram, RoadParams
from .scenario import Scenario
from .source import FluidSource

__all__ = [
    "Cell",
    "CellVehiclesOutput",
    "Commodity",
    "ConfigurationError",
    "DemandProfile",
    "Dispatcher",
    "Event",
    "EventKind",
    "FluidModel",
    "FluidSource",
    "FundamentalDiagram",
    "InvariantViolation",
    "KeepLaneSelector",
    "LaneGroup",
    "LaneGroupSpec",
    "LaneSelector",
    "Link",
    "LinkFlowOutput",
    "LinkModel",
    "LinkVehiclesOutput",
    "MODEL_REGISTRY",
    "Model",
    "ModelParams",
    "Network",
    "Node",
    "NodeModel",
    "PacketLaneGroup",
    "PacketLink",
    "PacketSplitter",
    "Path",
    "RoadConnection",
    "RoadParams",
    "Scenario",
    "Side",
    "SimulationOutput",
    "SplitProfile",
    "State",
    "SupplyLaneSelector",
    "UnimplementedFeatureError",
    "UniformLaneSelector",
]
