# tests/test_problem.py
"""Unit tests for lwr_adjoint.problem.

This module verifies:
- End-to-end regression on the corridor (travel time 120).
- Barrier behavior: value, violation error, epsilon == 0 switch.
- Starting point, control validation and the out-of-range warning.
- The residual vanishes on simulated states.
- dhdx structure: -1 diagonal, lower triangular, empty cells skipped.
- dhdx, dhdu, djdx and djdu against central finite differences.
- Repeated assembly is deterministic and never mutates the store.
"""

from __future__ import annotations

import math

import numpy as np
import pytest
from _networks import build_corridor, central_difference
from scipy.sparse import triu

from lwr_adjoint import (
    ConfigurationError,
    ErrorCode,
    NumericalInvalidityError,
    ProblemOptions,
    SplitRatios,
    SystemOptimalProblem,
)

# -----------------------------------------------------------------------------
# Forward evaluation and objective
# -----------------------------------------------------------------------------


def test_corridor_regression(corridor_problem: SystemOptimalProblem) -> None:
    """Ten vehicles per step through two cells give a travel time of 120."""
    control = corridor_problem.get_starting_point()
    np.testing.assert_array_equal(control, np.ones(5))

    state = corridor_problem.forward_simulate(control)
    assert corridor_problem.objective(state, control) == pytest.approx(120.0)
    assert corridor_problem.objective_of(control) == pytest.approx(120.0)

    buffer_cell = corridor_problem.network.origins[0].buffer_cell
    sink = corridor_problem.network.destinations[0].sink_cell
    totals = np.array([p.total_density for p in state.profiles])
    np.testing.assert_allclose(totals[:, 0], [0.0, 10.0, 10.0, 10.0, 10.0])
    np.testing.assert_allclose(totals[:, 1], [0.0, 0.0, 10.0, 10.0, 10.0])
    np.testing.assert_allclose(totals[:, buffer_cell], [10.0] * 5)
    np.testing.assert_allclose(totals[:, sink], [0.0, 0.0, 0.0, 10.0, 20.0])


def test_sum_of_split_ratios_is_unscaled(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """S[o, k] sums the raw controls of the origin, not U * alpha."""
    state = diverge_problem.forward_simulate(diverge_control)
    np.testing.assert_allclose(state.sum_of_split_ratios, [[1.3, 1.2, 1.3]])


def test_barrier_value(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """J = travel time - epsilon * sum ln(S - 1)."""
    state = diverge_problem.forward_simulate(diverge_control)
    expected = diverge_problem.total_travel_time(state) - 0.01 * (
        math.log(0.3) + math.log(0.2) + math.log(0.3)
    )
    assert diverge_problem.objective(state, diverge_control) == pytest.approx(expected)


def test_barrier_violation_raises() -> None:
    """S == 1 with an active barrier is a numerical invalidity."""
    network = build_corridor()
    ratios = SplitRatios.empty(network, alpha=1.0)
    ratios.origin[0, :, 1] = 1.0
    problem = SystemOptimalProblem(
        network, ratios, ProblemOptions(alpha=1.0, epsilon=0.001)
    )
    control = problem.get_starting_point()
    state = problem.forward_simulate(control)

    with pytest.raises(NumericalInvalidityError, match="strictly greater than 1") as exc:
        problem.objective(state, control)
    assert exc.value.code is ErrorCode.BARRIER_INFEASIBLE

    with pytest.raises(NumericalInvalidityError, match="strictly greater than 1"):
        problem.djdu(state, control)


def test_barrier_skips_zero_demand() -> None:
    """Steps without demand contribute no barrier term."""
    network = build_corridor(n_steps=2, demand=[10.0, 0.0])
    ratios = SplitRatios.empty(network, alpha=1.0)
    problem = SystemOptimalProblem(network, ratios, ProblemOptions(epsilon=0.5))
    control = np.array([1.5, 0.2])
    with pytest.warns(RuntimeWarning, match="outside"):
        state = problem.forward_simulate(control)
    barrier = problem.objective(state, control) - problem.total_travel_time(state)
    assert barrier == pytest.approx(-0.5 * math.log(0.5))
    np.testing.assert_allclose(problem.djdu(state, control), [0.5 / (1 - 1.5), 0.0])


def test_zero_alpha_starting_point() -> None:
    """A control vector cannot be derived when nothing is compliant."""
    network = build_corridor()
    problem = SystemOptimalProblem(
        network, SplitRatios.empty(network, 0.0), ProblemOptions(alpha=0.0)
    )
    with pytest.raises(ConfigurationError, match="compliant commodities is zero") as exc:
        problem.get_starting_point()
    assert exc.value.code is ErrorCode.ZERO_COMPLIANCE


def test_control_shape_is_validated(corridor_problem: SystemOptimalProblem) -> None:
    """A control of the wrong size is a configuration error."""
    with pytest.raises(ConfigurationError, match="control has shape") as exc:
        corridor_problem.forward_simulate(np.ones(4))
    assert exc.value.code is ErrorCode.INVALID_CONTROL


def test_out_of_range_control_warns(corridor_problem: SystemOptimalProblem) -> None:
    """Strict mode warns about controls outside [0, 1] but still simulates."""
    with pytest.warns(RuntimeWarning, match=r"outside \[0, 1\]"):
        state = corridor_problem.forward_simulate(np.full(5, 1.5))
    assert state.n_steps == 5


def test_forward_simulate_leaves_store_untouched(
    merge_problem: SystemOptimalProblem,
    merge_control: np.ndarray,
) -> None:
    """Each run works on its own copy of the split ratios."""
    before = merge_problem.split_ratios
    merge_problem.forward_simulate(merge_control)
    after = merge_problem.split_ratios
    np.testing.assert_array_equal(before.origin, after.origin)
    assert np.all(after.origin[:, :, 1:] == 0.0)


# -----------------------------------------------------------------------------
# Residual and dH/dX structure
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("name", ["corridor", "merge", "diverge"])
def test_residual_vanishes_on_simulated_state(
    name: str,
    request: pytest.FixtureRequest,
) -> None:
    """H(X(U), U) == 0 for the state produced by the simulator."""
    problem: SystemOptimalProblem = request.getfixturevalue(f"{name}_problem")
    if name == "corridor":
        control = problem.get_starting_point()
    else:
        control = request.getfixturevalue(f"{name}_control")
    state = problem.forward_simulate(control)
    x = state.to_vector(problem.layout)
    np.testing.assert_allclose(problem.residual(x, control), 0.0, atol=1e-10)


def test_dhdx_diagonal_and_triangular(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """dH/dX has -1 on its diagonal and nothing above it."""
    state = diverge_problem.forward_simulate(diverge_control)
    dhdx = diverge_problem.dhdx(state, diverge_control)
    n = diverge_problem.layout.state_size
    assert dhdx.shape == (n, n)
    np.testing.assert_array_equal(dhdx.diagonal(), -np.ones(n))
    assert triu(dhdx, k=1).nnz == 0


def test_empty_cells_only_keep_the_diagonal(
    corridor_problem: SystemOptimalProblem,
) -> None:
    """Out-flow and aggregate rows of an empty incoming cell hold only -1."""
    control = corridor_problem.get_starting_point()
    state = corridor_problem.forward_simulate(control)
    dhdx = corridor_problem.dhdx(state, control).tocsr()
    layout = corridor_problem.layout
    first = 0

    rows = [layout.out_flow_definition(0, first, c) for c in range(layout.width)]
    rows.append(layout.aggregate_definition(0, 0, 0, 0))
    for row in rows:
        entries = dhdx.getrow(row)
        assert entries.nnz == 1
        assert entries[0, row] == -1.0


def test_repeated_assembly_is_deterministic(
    merge_problem: SystemOptimalProblem,
    merge_control: np.ndarray,
) -> None:
    """Building the Jacobians twice gives identical matrices."""
    state = merge_problem.forward_simulate(merge_control)
    first = merge_problem.dhdx(state, merge_control)
    second = merge_problem.dhdx(state, merge_control)
    assert (first != second).nnz == 0
    np.testing.assert_array_equal(
        merge_problem.dhdu(state, merge_control).toarray(),
        merge_problem.dhdu(state, merge_control).toarray(),
    )


# -----------------------------------------------------------------------------
# Finite-difference checks
# -----------------------------------------------------------------------------


def test_central_difference_at_capacity_scale() -> None:
    """Coordinates near a 1e6 capacity keep the precision of the difference."""
    numeric = central_difference(
        lambda v: np.array([1e6 - v[0], 3.0 * v[1]]), np.array([1e6 - 5.0, 2.0])
    )
    np.testing.assert_allclose(numeric, [[-1.0, 0.0], [0.0, 3.0]], rtol=0, atol=1e-6)



@pytest.mark.parametrize("name", ["merge", "diverge"])
def test_dhdx_matches_finite_differences(
    name: str,
    request: pytest.FixtureRequest,
) -> None:
    """Every column of dH/dX matches a central difference of the residual."""
    problem: SystemOptimalProblem = request.getfixturevalue(f"{name}_problem")
    control = request.getfixturevalue(f"{name}_control")
    state = problem.forward_simulate(control)
    x = state.to_vector(problem.layout)

    numeric = central_difference(lambda v: problem.residual(v, control), x)
    analytic = problem.dhdx(state, control).toarray()
    np.testing.assert_allclose(analytic, numeric, rtol=1e-6, atol=1e-6)


@pytest.mark.parametrize("name", ["merge", "diverge"])
def test_dhdu_matches_finite_differences(
    name: str,
    request: pytest.FixtureRequest,
) -> None:
    """dH/dU matches a central difference of the residual at fixed X."""
    problem: SystemOptimalProblem = request.getfixturevalue(f"{name}_problem")
    control = request.getfixturevalue(f"{name}_control")
    state = problem.forward_simulate(control)
    x = state.to_vector(problem.layout)

    numeric = central_difference(lambda u: problem.residual(x, u), control)
    analytic = problem.dhdu(state, control).toarray()
    np.testing.assert_allclose(analytic, numeric, rtol=1e-6, atol=1e-6)


def test_dhdu_entries(merge_problem: SystemOptimalProblem) -> None:
    """dH/dU holds demand * alpha on the buffer mass rows only."""
    control = np.full(6, 0.5)
    state = merge_problem.forward_simulate(control)
    dhdu = merge_problem.dhdu(state, control)
    layout = merge_problem.layout
    assert dhdu.shape == (layout.residual_size, layout.control_size)
    assert dhdu.nnz == 6
    origin = merge_problem.network.origins[1]
    row = layout.mass_conservation(2, origin.buffer_cell, 2)
    assert dhdu[row, layout.control(2, 2)] == pytest.approx(6.0 * 0.5)


@pytest.mark.parametrize("name", ["merge", "diverge"])
def test_cost_gradients_match_finite_differences(
    name: str,
    request: pytest.FixtureRequest,
) -> None:
    """dJ/dX and dJ/dU match central differences of the flat-vector cost."""
    problem: SystemOptimalProblem = request.getfixturevalue(f"{name}_problem")
    control = request.getfixturevalue(f"{name}_control")
    state = problem.forward_simulate(control)
    x = state.to_vector(problem.layout)

    assert problem.cost(x, control) == pytest.approx(problem.objective(state, control))

    numeric_x = central_difference(lambda v: problem.cost(v, control), x)
    np.testing.assert_allclose(
        problem.djdx(state, control).toarray().ravel(), numeric_x, atol=1e-6
    )

    numeric_u = central_difference(lambda u: problem.cost(x, u), control)
    np.testing.assert_allclose(
        problem.djdu(state, control), numeric_u, rtol=1e-6, atol=1e-8
    )


def test_djdx_ignores_sinks(corridor_problem: SystemOptimalProblem) -> None:
    """Sink densities do not count as time spent on the network."""
    control = corridor_problem.get_starting_point()
    state = corridor_problem.forward_simulate(control)
    djdx = corridor_problem.djdx(state, control)
    layout = corridor_problem.layout
    sink = corridor_problem.network.destinations[0].sink_cell
    assert djdx.shape == (1, layout.state_size)
    assert djdx.nnz == layout.n_steps * (layout.n_cells - 1) * layout.width
    assert djdx[0, layout.density(3, sink, 1)] == 0.0
    assert djdx[0, layout.density(3, 0, 1)] == 1.0
