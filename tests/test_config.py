"""Unit tests for lwr_adjoint.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from lwr_adjoint import ProblemConfig, ProblemOptions


def test_defaults_translate_to_options() -> None:
    """The default config maps onto the default options."""
    assert ProblemConfig().to_options() == ProblemOptions()


def test_values_are_forwarded() -> None:
    """Every option is carried into the native dataclass."""
    cfg = ProblemConfig(delta_t=0.5, time_steps=12, alpha=0.3, epsilon=0.0, strict=False)
    opts = cfg.to_options()
    assert opts.delta_t == 0.5
    assert opts.alpha == 0.3
    assert opts.epsilon == 0.0
    assert opts.strict is False


@pytest.mark.parametrize(
    "field",
    [
        {"alpha": 1.5},
        {"alpha": -0.1},
        {"delta_t": 0.0},
        {"time_steps": 0},
        {"epsilon": -1.0},
    ],
)
def test_out_of_range_values_are_rejected(field: dict[str, float]) -> None:
    """Field constraints are enforced by pydantic."""
    with pytest.raises(ValidationError):
        ProblemConfig(**field)


def test_extra_fields_are_allowed() -> None:
    """A config file may carry unrelated sections."""
    cfg = ProblemConfig.model_validate({"alpha": 0.5, "graph": {"nodes": []}})
    assert cfg.alpha == 0.5
