"""lwr_adjoint: adjoint system-optimal routing on LWR cell-transmission networks."""

from __future__ import annotations

from .adjoint import (
    DescentOptions,
    OptimizationResult,
    adjoint_gradient,
    gradient_descent,
)
from .config import ProblemConfig, ProblemOptions
from .discretization import cells_per_link, discretize
from .errors import (
    ConfigurationError,
    ErrorCode,
    LwrAdjointError,
    NumericalInvalidityError,
)
from .graph import Graph
from .junction_policy import (
    FlowPartials,
    diverge_flow,
    flow_partials,
    merge_flows,
    simple_flow,
)
from .layout import Segment, StateCoordinate, VectorLayout
from .network import (
    Cell,
    CellKind,
    Destination,
    Junction,
    JunctionKind,
    Network,
    NetworkBuilder,
    Origin,
)
from .problem import SystemOptimalProblem
from .simulator import CtmSimulator
from .split_ratios import SplitRatios
from .state import Profile, State

__all__ = [
    "Cell",
    "CellKind",
    "ConfigurationError",
    "CtmSimulator",
    "DescentOptions",
    "Destination",
    "ErrorCode",
    "FlowPartials",
    "Graph",
    "Junction",
    "JunctionKind",
    "LwrAdjointError",
    "Network",
    "NetworkBuilder",
    "NumericalInvalidityError",
    "OptimizationResult",
    "Origin",
    "ProblemConfig",
    "ProblemOptions",
    "Profile",
    "Segment",
    "SplitRatios",
    "State",
    "StateCoordinate",
    "SystemOptimalProblem",
    "VectorLayout",
    "adjoint_gradient",
    "cells_per_link",
    "discretize",
    "diverge_flow",
    "flow_partials",
    "gradient_descent",
    "merge_flows",
    "simple_flow",
]

__version__ = "0.1.0"
