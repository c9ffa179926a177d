# src/lwr_adjoint/errors.py
"""Error types and numeric guards for lwr_adjoint.

This module centralizes:
- explicit error classes with actionable messages, and
- small helpers that raise them with standardized wording.

Two families of failures exist:
- configuration errors: the network, the store or the requested operation
  cannot be handled at all (unsupported junction shape, alpha == 0, ...);
- numerical invalidity: a flow, density or derivative is NaN/inf or a
  barrier precondition is violated.

Neither is recovered locally. Zero total density at a cell is not an error;
the derivative assembly skips such cells.
"""

from __future__ import annotations

import math
from enum import StrEnum
from typing import Final


class ErrorCode(StrEnum):
    """Machine-readable classification for lwr_adjoint failures."""

    UNSUPPORTED_JUNCTION = "unsupported_junction"
    INVALID_NETWORK = "invalid_network"
    INVALID_CONTROL = "invalid_control"
    ZERO_COMPLIANCE = "zero_compliance"
    NON_FINITE_VALUE = "non_finite_value"
    BARRIER_INFEASIBLE = "barrier_infeasible"
    INVALID_STATE = "invalid_state"


class LwrAdjointError(Exception):
    """Base exception for lwr_adjoint errors."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        """
        Initialize an LwrAdjointError.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code classifying the error.
        """
        super().__init__(message)
        self.code: ErrorCode | None = code


class ConfigurationError(LwrAdjointError, ValueError):
    """Raised when the network or a requested operation is misconfigured."""


class NumericalInvalidityError(LwrAdjointError, ArithmeticError):
    """Raised when a computed quantity is not a valid finite number."""


_UNSUPPORTED_JUNCTION_MSG: Final[str] = (
    "Junction {junction} has {n_in} incoming and {n_out} outgoing cells; "
    "only 1x1, 2x1 and 1xN junctions are supported."
)
_NON_FINITE_MSG: Final[str] = "{what} is not a finite number: {value!r}"
_BARRIER_MSG: Final[str] = (
    "The sum of the split ratios at origin {origin}, time step {step} is "
    "{total!r}; it must be strictly greater than 1."
)


def raise_configuration_error(
    detail: str,
    *,
    code: ErrorCode = ErrorCode.INVALID_NETWORK,
) -> None:
    """Raise a standardized ConfigurationError.

    Args:
        detail: Description of the configuration issue.
        code: Error code classifying the issue.

    Raises:
        ConfigurationError: Always.
    """
    raise ConfigurationError(f"Invalid configuration: {detail}", code=code)


def raise_unsupported_junction(junction: int, n_in: int, n_out: int) -> None:
    """Raise a ConfigurationError for a junction shape with no flow policy.

    Args:
        junction: Junction id.
        n_in: Number of incoming cells.
        n_out: Number of outgoing cells.

    Raises:
        ConfigurationError: Always.
    """
    msg = _UNSUPPORTED_JUNCTION_MSG.format(junction=junction, n_in=n_in, n_out=n_out)
    raise ConfigurationError(msg, code=ErrorCode.UNSUPPORTED_JUNCTION)


def raise_numerical_invalidity(
    detail: str,
    *,
    code: ErrorCode = ErrorCode.INVALID_STATE,
) -> None:
    """Raise a standardized NumericalInvalidityError.

    Args:
        detail: Description of the invalid quantity.
        code: Error code classifying the issue.

    Raises:
        NumericalInvalidityError: Always.
    """
    raise NumericalInvalidityError(detail, code=code)


def require_finite(value: float, *, what: str) -> float:
    """Return value unchanged if it is finite.

    Args:
        value: Quantity to check.
        what: Name used in the error message.

    Raises:
        NumericalInvalidityError: If value is NaN or infinite.

    Returns:
        The input value.
    """
    if not math.isfinite(value):
        raise NumericalInvalidityError(
            _NON_FINITE_MSG.format(what=what, value=value),
            code=ErrorCode.NON_FINITE_VALUE,
        )
    return value


def require_barrier_feasible(total: float, *, origin: int, step: int) -> float:
    """Return total - 1 if it is strictly positive.

    Args:
        total: Sum of the compliant controls at one origin and time step.
        origin: Origin index.
        step: Time step.

    Raises:
        NumericalInvalidityError: If total - 1 <= 0 (or is not finite).

    Returns:
        total - 1.
    """
    gap = float(total) - 1.0
    if not (math.isfinite(gap) and gap > 0.0):
        raise NumericalInvalidityError(
            _BARRIER_MSG.format(origin=origin, step=step, total=total),
            code=ErrorCode.BARRIER_INFEASIBLE,
        )
    return gap
