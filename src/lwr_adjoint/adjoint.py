# src/lwr_adjoint/adjoint.py
"""Adjoint gradient and a projected gradient-descent driver.

The reduced objective J(U) = J(X(U), U) is differentiated through the
constraint system H(X, U) = 0:

    dhdx^T lambda = -djdx^T
    dJ/dU         = djdu + dhdu^T lambda

dhdx is lower triangular with a -1 diagonal, so the adjoint system is a
single upper-triangular sparse solve.

The driver takes projected steps onto [0, 1] with Armijo backtracking. Trial
points at which the forward simulation or the barrier is numerically invalid
are rejected and the step is shrunk.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt
from scipy.sparse.linalg import spsolve_triangular

from .errors import NumericalInvalidityError, require_finite

if TYPE_CHECKING:
    from .problem import SystemOptimalProblem
    from .state import State

FloatArray = npt.NDArray[np.floating[Any]]

_REJECTED_STEP_WARNING: Final[str] = (
    "rejected trial step of size {step:.3g} at iteration {iteration}: {reason}"
)
_STEP_UNDERFLOW_WARNING: Final[str] = (
    "step size fell below {min_step:.3g} at iteration {iteration}; stopping"
)


def adjoint_gradient(
    problem: SystemOptimalProblem,
    control: FloatArray,
    state: State | None = None,
) -> FloatArray:
    """Gradient of the reduced objective with respect to the controls.

    Args:
        problem: The routing problem.
        control: Control vector U.
        state: Optional state already simulated with ``control``.

    Raises:
        NumericalInvalidityError: If a derivative is invalid or the barrier
            precondition fails.

    Returns:
        Dense gradient of size |U|.
    """
    u = np.asarray(control, dtype=np.float64).ravel()
    if state is None:
        state = problem.forward_simulate(u)

    dhdx = problem.dhdx(state, u)
    djdx = problem.djdx(state, u)
    rhs = -djdx.toarray().ravel()
    lam = spsolve_triangular(dhdx.T.tocsr(), rhs, lower=False)

    gradient = problem.djdu(state, u) + problem.dhdu(state, u).T @ lam
    for value in gradient:
        require_finite(float(value), what="adjoint gradient")
    return np.asarray(gradient, dtype=np.float64)


@dataclass(slots=True, frozen=True)
class DescentOptions:
    """Configuration for :func:`gradient_descent`.

    Attributes:
        max_iter: Maximum number of accepted iterations.
        step: Initial step size of every line search.
        shrink: Multiplicative step reduction on rejection, in (0, 1).
        armijo: Sufficient-decrease constant, in (0, 1).
        min_step: Line search gives up below this step size.
        tol: Stop when the projected step moves U by less than this (max norm).
    """

    max_iter: int = 50
    step: float = 1.0
    shrink: float = 0.5
    armijo: float = 1e-4
    min_step: float = 1e-10
    tol: float = 1e-8


@dataclass(slots=True)
class OptimizationResult:
    """Outcome of :func:`gradient_descent`.

    Attributes:
        control: Best control found.
        objective: Objective value at ``control``.
        iterations: Number of accepted iterations.
        converged: True if the stopping tolerance was reached.
        history: Objective value after every accepted iteration (starting
            with the initial value).
    """

    control: FloatArray
    objective: float
    iterations: int
    converged: bool
    history: list[float] = field(default_factory=list)


def _project(control: FloatArray) -> FloatArray:
    return np.clip(control, 0.0, 1.0)


def gradient_descent(
    problem: SystemOptimalProblem,
    control: FloatArray,
    options: DescentOptions | None = None,
) -> OptimizationResult:
    """Minimize the objective with projected gradient steps.

    Args:
        problem: The routing problem.
        control: Starting control U0 (must be a valid point).
        options: Descent options.

    Raises:
        NumericalInvalidityError: If the starting point cannot be evaluated.

    Returns:
        The optimization result.
    """
    opts = options or DescentOptions()
    u = np.asarray(control, dtype=np.float64).ravel().copy()
    state = problem.forward_simulate(u)
    value = problem.objective(state, u)
    history = [value]

    iterations = 0
    converged = False
    while iterations < opts.max_iter:
        gradient = adjoint_gradient(problem, u, state)
        step = opts.step
        accepted = False
        while step >= opts.min_step:
            trial = _project(u - step * gradient)
            move = trial - u
            if float(np.max(np.abs(move), initial=0.0)) < opts.tol:
                converged = True
                break
            try:
                trial_state = problem.forward_simulate(trial)
                trial_value = problem.objective(trial_state, trial)
            except NumericalInvalidityError as exc:
                warnings.warn(
                    _REJECTED_STEP_WARNING.format(
                        step=step, iteration=iterations, reason=exc
                    ),
                    RuntimeWarning,
                    stacklevel=2,
                )
                step *= opts.shrink
                continue
            if trial_value <= value + opts.armijo * float(gradient @ move):
                u, state, value = trial, trial_state, trial_value
                accepted = True
                break
            step *= opts.shrink

        if converged:
            break
        if not accepted:
            warnings.warn(
                _STEP_UNDERFLOW_WARNING.format(
                    min_step=opts.min_step, iteration=iterations
                ),
                RuntimeWarning,
                stacklevel=2,
            )
            break
        iterations += 1
        history.append(value)

    return OptimizationResult(
        control=u,
        objective=value,
        iterations=iterations,
        converged=converged,
        history=history,
    )
