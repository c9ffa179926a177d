# tests/test_adjoint.py
"""Unit tests for lwr_adjoint.adjoint.

This module verifies:
- The adjoint gradient equals a finite-difference gradient of J(U) on
  networks whose flows stay inside one branch of the junction policy.
- The barrier contributes epsilon / (1 - S) through dJ/dU.
- gradient_descent never increases the objective, stays inside [0, 1] and
  warns about rejected trial steps.
"""

from __future__ import annotations

import numpy as np
import pytest
from _networks import build_corridor, central_difference

from lwr_adjoint import (
    DescentOptions,
    ProblemOptions,
    SplitRatios,
    SystemOptimalProblem,
    adjoint_gradient,
    gradient_descent,
)

# -----------------------------------------------------------------------------
# Adjoint gradient
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("name", ["merge", "diverge"])
def test_adjoint_gradient_matches_finite_differences(
    name: str,
    request: pytest.FixtureRequest,
) -> None:
    """dJ/dU from one adjoint solve equals a central difference of J(U)."""
    problem: SystemOptimalProblem = request.getfixturevalue(f"{name}_problem")
    control = request.getfixturevalue(f"{name}_control")

    gradient = adjoint_gradient(problem, control)
    numeric = central_difference(problem.objective_of, control)

    assert gradient.shape == control.shape
    np.testing.assert_allclose(gradient, numeric, rtol=1e-5, atol=1e-6)


def test_adjoint_gradient_reuses_state(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """Passing a precomputed state gives the same gradient."""
    state = diverge_problem.forward_simulate(diverge_control)
    np.testing.assert_allclose(
        adjoint_gradient(diverge_problem, diverge_control, state),
        adjoint_gradient(diverge_problem, diverge_control),
    )


def test_barrier_part_of_gradient(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """Switching the barrier off removes exactly epsilon / (1 - S) per entry."""
    plain = SystemOptimalProblem(
        diverge_problem.network,
        diverge_problem.split_ratios,
        ProblemOptions(alpha=0.5, epsilon=0.0),
    )
    with_barrier = adjoint_gradient(diverge_problem, diverge_control)
    without = adjoint_gradient(plain, diverge_control)

    sums = np.repeat([1.3, 1.2, 1.3], 2)
    np.testing.assert_allclose(with_barrier - without, 0.01 / (1.0 - sums))


# -----------------------------------------------------------------------------
# Gradient descent
# -----------------------------------------------------------------------------


def test_gradient_descent_decreases_objective(
    merge_problem: SystemOptimalProblem,
    merge_control: np.ndarray,
) -> None:
    """Accepted iterations never increase J and controls stay in [0, 1]."""
    result = gradient_descent(
        merge_problem,
        merge_control,
        DescentOptions(max_iter=5, step=0.05),
    )
    assert result.history[0] == pytest.approx(merge_problem.objective_of(merge_control))
    assert all(b <= a + 1e-12 for a, b in zip(result.history, result.history[1:]))
    assert result.objective == pytest.approx(result.history[-1])
    assert np.all((result.control >= 0.0) & (result.control <= 1.0))
    assert result.iterations == len(result.history) - 1


def test_gradient_descent_converges_at_bound() -> None:
    """With a non-negative gradient and U = 0 the projected step is zero."""
    network = build_corridor()
    problem = SystemOptimalProblem(
        network,
        SplitRatios.empty(network, 1.0),
        ProblemOptions(alpha=1.0, epsilon=0.0),
    )
    result = gradient_descent(problem, np.zeros(5))
    assert result.converged
    assert result.iterations == 0
    np.testing.assert_array_equal(result.control, np.zeros(5))


def test_gradient_descent_rejects_infeasible_steps(
    diverge_problem: SystemOptimalProblem,
    diverge_control: np.ndarray,
) -> None:
    """Trial points violating the barrier are rejected with a warning."""
    with pytest.warns(RuntimeWarning, match="rejected trial step"):
        result = gradient_descent(
            diverge_problem,
            diverge_control,
            DescentOptions(max_iter=1, step=1e3),
        )
    assert result.objective <= result.history[0] + 1e-12
    sums = result.control.reshape(3, 2).sum(axis=1)
    assert np.all(sums > 1.0)
