# src/lwr_adjoint/config.py
"""Configuration for the system-optimal routing problem.

Two layers exist:

- :class:`ProblemOptions` is the native, frozen dataclass consumed by the
  simulator and the problem object.
- :class:`ProblemConfig` is the pydantic-facing schema used for JSON/YAML
  files. It validates ranges and translates into ProblemOptions.

Notes:
    - ``alpha`` is the share of each origin's demand that is compliant. A
      value of zero is accepted here so the forward simulator can still be
      run; requesting a control vector with ``alpha == 0`` is a configuration
      error raised by the problem object.
    - ``epsilon == 0`` disables the logarithmic barrier (and its feasibility
      precondition) entirely.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field


@dataclass(slots=True, frozen=True)
class ProblemOptions:
    """Options for the simulator and the adjoint problem.

    Attributes:
        delta_t: Time step of the discretization.
        alpha: Share of the demand that is compliant, in [0, 1].
        epsilon: Weight of the logarithmic barrier.
        strict: Warn about controls outside [0, 1] during forward simulation.
    """

    delta_t: float = 1.0
    alpha: float = 1.0
    epsilon: float = 0.001
    strict: bool = True


class ProblemConfig(BaseModel):
    """Configuration schema for a system-optimal routing run.

    Unknown fields are allowed and ignored so that a single file can carry
    the graph description next to these settings.
    """

    model_config = ConfigDict(extra="allow")

    delta_t: float = Field(default=1.0, gt=0.0, description="Time step")
    time_steps: int = Field(default=1, ge=1, description="Horizon T")
    alpha: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Share of the compliant commodities",
    )
    epsilon: float = Field(default=0.001, ge=0.0, description="Barrier weight")
    strict: bool = Field(
        default=True,
        description="Warn about physically meaningless controls",
    )

    def to_options(self) -> ProblemOptions:
        """Convert this config to native ProblemOptions.

        Returns:
            Fully constructed ProblemOptions instance.
        """
        return ProblemOptions(
            delta_t=self.delta_t,
            alpha=self.alpha,
            epsilon=self.epsilon,
            strict=self.strict,
        )
