# src/lwr_adjoint/state.py
"""Time-indexed simulation state.

A :class:`Profile` holds everything the Jacobian assembly needs about one
time step: partial densities, cached totals, demand and supply, realized
aggregate split ratios and per-commodity flows. A :class:`State` is the
ordered sequence of T profiles produced by one forward simulation plus the
per-origin sums of the compliant controls.

Profiles convert to and from a block of the flat state vector X; see
:mod:`lwr_adjoint.layout` for the block layout.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from .layout import VectorLayout
    from .network import Network

FloatArray = npt.NDArray[np.floating[Any]]


@dataclass(frozen=True, slots=True)
class Profile:
    """Snapshot of the network at one time step.

    Attributes:
        partial_densities: Shape (N, C + 1).
        demand: Shape (N,).
        supply: Shape (N,).
        aggregate_split_ratios: One (n_in, n_out) array per junction.
        out_flows: Shape (N, C + 1).
        in_flows: Shape (N, C + 1).
    """

    partial_densities: FloatArray
    demand: FloatArray
    supply: FloatArray
    aggregate_split_ratios: tuple[FloatArray, ...]
    out_flows: FloatArray
    in_flows: FloatArray

    @property
    def total_density(self) -> FloatArray:
        """Total density of every cell, shape (N,)."""
        return self.partial_densities.sum(axis=1)

    def write_block(self, layout: VectorLayout, k: int, x: FloatArray) -> None:
        """Write this profile into block k of x."""
        base = layout.block(k)
        x[base : base + layout.density_size] = self.partial_densities.ravel()
        start = base + layout.demand_supply_position
        x[start : start + layout.demand_supply_size : 2] = self.demand
        x[start + 1 : start + layout.demand_supply_size : 2] = self.supply
        start = base + layout.aggregate_position
        for ratios in self.aggregate_split_ratios:
            x[start : start + ratios.size] = ratios.ravel()
            start += ratios.size
        start = base + layout.out_flow_position
        x[start : start + layout.flow_size] = self.out_flows.ravel()
        start = base + layout.in_flow_position
        x[start : start + layout.flow_size] = self.in_flows.ravel()

    @classmethod
    def from_block(
        cls,
        layout: VectorLayout,
        network: Network,
        k: int,
        x: FloatArray,
    ) -> Profile:
        """Read block k of x back into a profile.

        The values need not be consistent with the dynamics.
        """
        base = layout.block(k)
        shape = (layout.n_cells, layout.width)
        densities = x[base : base + layout.density_size].reshape(shape).copy()
        start = base + layout.demand_supply_position
        demand = x[start : start + layout.demand_supply_size : 2].copy()
        supply = x[start + 1 : start + layout.demand_supply_size : 2].copy()
        start = base + layout.aggregate_position
        aggregate: list[FloatArray] = []
        for junction in network.junctions:
            n_in, n_out = len(junction.incoming), len(junction.outgoing)
            aggregate.append(x[start : start + n_in * n_out].reshape(n_in, n_out).copy())
            start += n_in * n_out
        start = base + layout.out_flow_position
        out_flows = x[start : start + layout.flow_size].reshape(shape).copy()
        start = base + layout.in_flow_position
        in_flows = x[start : start + layout.flow_size].reshape(shape).copy()
        return cls(
            partial_densities=densities,
            demand=demand,
            supply=supply,
            aggregate_split_ratios=tuple(aggregate),
            out_flows=out_flows,
            in_flows=in_flows,
        )


@dataclass(frozen=True, slots=True)
class State:
    """Result of one forward simulation.

    Attributes:
        profiles: One profile per time step, in order.
        sum_of_split_ratios: Shape (n_origins, T); the unscaled sum of the
            compliant controls of each origin at each step.
    """

    profiles: tuple[Profile, ...]
    sum_of_split_ratios: FloatArray

    @property
    def n_steps(self) -> int:
        """Number of time steps T."""
        return len(self.profiles)

    def to_vector(self, layout: VectorLayout) -> FloatArray:
        """Flatten the state into X.

        Returns:
            Array of size ``layout.state_size``.
        """
        x = np.zeros(layout.state_size, dtype=np.float64)
        for k, profile in enumerate(self.profiles):
            profile.write_block(layout, k, x)
        return x
