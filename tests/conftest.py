"""Shared fixtures for the lwr_adjoint test suite."""

from __future__ import annotations

import numpy as np
import pytest
from _networks import (
    DIVERGE_CONTROL,
    MERGE_CONTROL,
    build_corridor,
    build_diverge,
    build_merge,
    diverge_ratios,
)

from lwr_adjoint import ProblemOptions, SplitRatios, SystemOptimalProblem

# -----------------------------------------------------------------------------
# Problem fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def corridor_problem() -> SystemOptimalProblem:
    """Corridor with alpha = 1, U0 = 1 and the barrier switched off."""
    network = build_corridor()
    ratios = SplitRatios.empty(network, alpha=1.0)
    ratios.origin[0, :, 1] = 1.0
    return SystemOptimalProblem(
        network, ratios, ProblemOptions(delta_t=1.0, alpha=1.0, epsilon=0.0)
    )


@pytest.fixture
def merge_problem() -> SystemOptimalProblem:
    """Merge network with alpha = 0.5 and the barrier switched off."""
    network = build_merge()
    ratios = SplitRatios.empty(network, alpha=0.5)
    return SystemOptimalProblem(
        network, ratios, ProblemOptions(delta_t=1.0, alpha=0.5, epsilon=0.0)
    )


@pytest.fixture
def diverge_problem() -> SystemOptimalProblem:
    """Diverge network with alpha = 0.5 and an active barrier."""
    network = build_diverge()
    return SystemOptimalProblem(
        network,
        diverge_ratios(network, 0.5),
        ProblemOptions(delta_t=1.0, alpha=0.5, epsilon=0.01),
    )


# -----------------------------------------------------------------------------
# Controls
# -----------------------------------------------------------------------------


@pytest.fixture
def merge_control() -> np.ndarray:
    """A control vector for the merge network (T = 3, C = 2)."""
    return np.array(MERGE_CONTROL)


@pytest.fixture
def diverge_control() -> np.ndarray:
    """A control vector for the diverge network; every sum exceeds 1."""
    return np.array(DIVERGE_CONTROL)
