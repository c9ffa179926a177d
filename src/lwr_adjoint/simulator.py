# src/lwr_adjoint/simulator.py
"""Forward cell-transmission integrator.

The simulator advances the partial densities of every cell over the horizon
using the junction flow policy of :mod:`lwr_adjoint.junction_policy`:

    rho_0     = rho_initial + injection_0
    rho_{k+1} = rho_k + dt / l * (f_in_k - f_out_k) + injection_{k+1}

where ``injection_k`` adds ``demand_o(k) * ratio(o, k, c)`` to the buffer
cell of every origin o. Each step records a :class:`~lwr_adjoint.state.Profile`
with the quantities the adjoint problem differentiates.

The simulator reads the split-ratio store it is given and never writes to it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt

from .errors import ErrorCode, raise_numerical_invalidity
from .junction_policy import aggregate_split_ratios, allocate
from .network import CellKind
from .state import Profile

if TYPE_CHECKING:
    from .config import ProblemOptions
    from .network import Network
    from .split_ratios import SplitRatios

FloatArray = npt.NDArray[np.floating[Any]]

_DENSITY_TOL: Final[float] = 1e-9

_NEGATIVE_DENSITY_ERROR = "negative density {value!r} in cell {cell} at step {step}"
_JAM_DENSITY_ERROR = (
    "density {value!r} in cell {cell} at step {step} exceeds jam density {jam!r}"
)
_INVALID_FLOW_ERROR = "invalid flow {value!r} out of cell {cell} at step {step}"
_NON_FINITE_DENSITY_ERROR = "non-finite density in cell {cell} at step {step}"


class CtmSimulator:
    """Cell-transmission forward integrator for a fixed network."""

    def __init__(self, network: Network, options: ProblemOptions) -> None:
        """
        Initialize the simulator.

        Args:
            network: The network to simulate.
            options: Problem options (only ``delta_t`` is used).
        """
        self.network = network
        self.delta_t = float(options.delta_t)
        self.dt_over_length = np.array(
            [self.delta_t / cell.length for cell in network.cells]
        )

    def injection(self, ratios: SplitRatios, k: int) -> FloatArray:
        """Densities injected into the buffer cells at step k, shape (N, C + 1)."""
        n_c = self.network.n_commodities + 1
        out = np.zeros((self.network.n_cells, n_c))
        for origin in self.network.origins:
            out[origin.buffer_cell] += origin.demand[k] * ratios.origin[origin.origin_id, k]
        return out

    def profile(self, densities: FloatArray, ratios: SplitRatios, k: int) -> Profile:
        """Compute demand, supply, split ratios and flows for given densities.

        Args:
            densities: Partial densities, shape (N, C + 1).
            ratios: Split-ratio store.
            k: Time step (selects the turning ratios).

        Returns:
            The profile of step k.
        """
        network = self.network
        totals = densities.sum(axis=1)
        demand = np.array(
            [cell.demand(float(t)) for cell, t in zip(network.cells, totals, strict=True)]
        )
        supply = np.array(
            [cell.supply(float(t)) for cell, t in zip(network.cells, totals, strict=True)]
        )

        out_flows = np.zeros_like(densities)
        in_flows = np.zeros_like(densities)
        aggregate: list[FloatArray] = []
        for junction in network.junctions:
            turning = ratios.turning_matrix(k, junction)
            agg = aggregate_split_ratios(junction, densities, turning)
            aggregate.append(agg)
            flows = allocate(junction, densities, demand, supply, agg, turning)
            for cell, values in flows.out_flows.items():
                out_flows[cell] = values
            for cell, values in flows.in_flows.items():
                in_flows[cell] = values

        return Profile(
            partial_densities=densities,
            demand=demand,
            supply=supply,
            aggregate_split_ratios=tuple(aggregate),
            out_flows=out_flows,
            in_flows=in_flows,
        )

    def step(self, profile: Profile) -> FloatArray:
        """Densities after one step, before injection."""
        delta = profile.in_flows - profile.out_flows
        return profile.partial_densities + self.dt_over_length[:, None] * delta

    def run(self, ratios: SplitRatios) -> tuple[Profile, ...]:
        """Simulate the whole horizon.

        Args:
            ratios: Split-ratio store for this run.

        Raises:
            NumericalInvalidityError: If a density leaves [0, jam_density] or a
                flow is negative or not finite.

        Returns:
            One profile per time step.
        """
        densities = self.network.initial_densities + self.injection(ratios, 0)
        profiles: list[Profile] = []
        for k in range(self.network.n_steps):
            self._check_densities(densities, k)
            profile = self.profile(densities, ratios, k)
            self._check_flows(profile, k)
            profiles.append(profile)
            if k + 1 < self.network.n_steps:
                densities = self.step(profile) + self.injection(ratios, k + 1)
        return tuple(profiles)

    def _check_densities(self, densities: FloatArray, k: int) -> None:
        """Validate the densities of step k."""
        for cell in self.network.cells:
            row = densities[cell.cell_id]
            if not np.all(np.isfinite(row)):
                raise_numerical_invalidity(
                    _NON_FINITE_DENSITY_ERROR.format(cell=cell.cell_id, step=k),
                    code=ErrorCode.NON_FINITE_VALUE,
                )
            low = float(row.min())
            if low < -_DENSITY_TOL:
                raise_numerical_invalidity(
                    _NEGATIVE_DENSITY_ERROR.format(value=low, cell=cell.cell_id, step=k)
                )
            total = float(row.sum())
            if cell.kind is CellKind.ROAD and total > cell.jam_density + _DENSITY_TOL:
                raise_numerical_invalidity(
                    _JAM_DENSITY_ERROR.format(
                        value=total, cell=cell.cell_id, step=k, jam=cell.jam_density
                    )
                )

    def _check_flows(self, profile: Profile, k: int) -> None:
        """Validate the flows of step k."""
        for flows in (profile.out_flows, profile.in_flows):
            bad = ~np.isfinite(flows) | (flows < -_DENSITY_TOL)
            if np.any(bad):
                cell, commodity = (int(v) for v in np.argwhere(bad)[0])
                raise_numerical_invalidity(
                    _INVALID_FLOW_ERROR.format(
                        value=float(flows[cell, commodity]), cell=cell, step=k
                    ),
                    code=ErrorCode.INVALID_STATE,
                )
