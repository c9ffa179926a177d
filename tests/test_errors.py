"""Unit tests for lwr_adjoint.errors."""

from __future__ import annotations

import math

import pytest

from lwr_adjoint import errors
from lwr_adjoint.errors import (
    ConfigurationError,
    ErrorCode,
    LwrAdjointError,
    NumericalInvalidityError,
)


def test_hierarchy_matches_builtin_families() -> None:
    """Both error families share a base and subclass the closest builtin."""
    assert issubclass(ConfigurationError, LwrAdjointError)
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(NumericalInvalidityError, LwrAdjointError)
    assert issubclass(NumericalInvalidityError, ArithmeticError)


def test_raise_configuration_error_prefix_and_code() -> None:
    """Configuration errors carry a standard prefix and their code."""
    with pytest.raises(ConfigurationError, match="^Invalid configuration: bad") as exc:
        errors.raise_configuration_error("bad", code=ErrorCode.INVALID_CONTROL)
    assert exc.value.code is ErrorCode.INVALID_CONTROL


def test_raise_configuration_error_default_code() -> None:
    """Topology problems are the default configuration error."""
    with pytest.raises(ConfigurationError) as exc:
        errors.raise_configuration_error("oops")
    assert exc.value.code is ErrorCode.INVALID_NETWORK


def test_raise_unsupported_junction() -> None:
    """The message names the offending shape."""
    with pytest.raises(ConfigurationError, match="2 incoming and 2 outgoing") as exc:
        errors.raise_unsupported_junction(4, 2, 2)
    assert exc.value.code is ErrorCode.UNSUPPORTED_JUNCTION


def test_raise_numerical_invalidity() -> None:
    """Numerical invalidity defaults to an invalid-state code."""
    with pytest.raises(NumericalInvalidityError, match="negative") as exc:
        errors.raise_numerical_invalidity("negative density")
    assert exc.value.code is ErrorCode.INVALID_STATE


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_require_finite_rejects(value: float) -> None:
    """NaN and infinities are rejected with a NON_FINITE_VALUE code."""
    with pytest.raises(NumericalInvalidityError, match="dH/dX") as exc:
        errors.require_finite(value, what="dH/dX")
    assert exc.value.code is ErrorCode.NON_FINITE_VALUE


def test_require_finite_passes_through() -> None:
    """Finite values are returned unchanged."""
    assert errors.require_finite(-3.5, what="x") == -3.5


@pytest.mark.parametrize("total", [1.0, 0.5, math.nan])
def test_require_barrier_feasible_rejects(total: float) -> None:
    """S - 1 must be strictly positive."""
    with pytest.raises(NumericalInvalidityError, match="strictly greater than 1") as exc:
        errors.require_barrier_feasible(total, origin=0, step=3)
    assert exc.value.code is ErrorCode.BARRIER_INFEASIBLE
    assert "time step 3" in str(exc.value)


def test_require_barrier_feasible_returns_gap() -> None:
    """A feasible sum returns S - 1."""
    assert errors.require_barrier_feasible(1.25, origin=0, step=0) == pytest.approx(0.25)
