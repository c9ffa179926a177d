# src/lwr_adjoint/problem.py
"""System-optimal routing problem in adjoint form.

The problem couples a control vector U (compliant split ratios at the
origins, expressed as fractions of the compliant share) with the state
vector X of a forward cell-transmission simulation through the implicit
constraint system H(X, U) = 0. It exposes what an adjoint optimizer needs:

- ``get_starting_point()``: U0 from the pre-seeded split ratios.
- ``forward_simulate(U)``: the State reached with controls U.
- ``objective(state, U)``: total density on the network minus a logarithmic
  barrier on the per-origin sum of the controls.
- ``dhdu``, ``dhdx``, ``djdx``, ``djdu``: analytic derivatives.

Residual definitions (block k, see :mod:`lwr_adjoint.layout`):

    mass          rho_{k-1} + dt/l (f_in_{k-1} - f_out_{k-1}) + inj_k - rho_k
    propagation   demand(rho_tot_k) - d_k,  supply(rho_tot_k) - s_k
    aggregate     sum_c beta_c rho_k,c / rho_tot_k - beta_agg_k
    out-flow      F_k * rho_k,c / rho_tot_k - f_out_k
    in-flow       sum_in beta_c f_out_k(in, c) - f_in_k

with ``rho_{-1}`` the initial densities, no in-flow term for buffer cells
and no out-flow term for sink cells. Every row of dH/dX therefore carries a
-1 on the diagonal and dH/dX is lower triangular.

All derivative builders are pure functions of (state, control) and the
immutable network; they may be called repeatedly and concurrently.
"""

from __future__ import annotations

import math
import warnings
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt
from scipy.sparse import coo_matrix, csr_matrix

from .config import ProblemOptions
from .errors import (
    ErrorCode,
    raise_configuration_error,
    require_barrier_feasible,
    require_finite,
)
from .junction_policy import (
    aggregate_split_ratios,
    commodity_shares,
    flow_partials,
    share_derivatives,
    total_flows,
)
from .layout import VectorLayout
from .network import CellKind
from .simulator import CtmSimulator
from .state import Profile, State

if TYPE_CHECKING:
    from .network import Junction, Network
    from .split_ratios import SplitRatios

FloatArray = npt.NDArray[np.floating[Any]]

_ZERO_ALPHA_ERROR: Final[str] = (
    "The share of the compliant commodities is zero. No optimization possible"
)
_CONTROL_SHAPE_ERROR: Final[str] = "control has shape {actual}; expected {expected}"
_STATE_LENGTH_ERROR: Final[str] = "state vector has size {actual}; expected {expected}"
_CONTROL_RANGE_WARNING: Final[str] = (
    "control entries outside [0, 1] (min {low:.6g}, max {high:.6g}); "
    "split ratios are only physically meaningful inside [0, 1]"
)


class _Triplets:
    """Accumulates (row, col, value) entries of a sparse matrix."""

    __slots__ = ("cols", "rows", "vals", "what")

    def __init__(self, what: str) -> None:
        self.rows: list[int] = []
        self.cols: list[int] = []
        self.vals: list[float] = []
        self.what = what

    def put(self, row: int, col: int, value: float) -> None:
        """Record a finite non-zero entry."""
        value = require_finite(float(value), what=f"{self.what}[{row}, {col}]")
        if value != 0.0:
            self.rows.append(row)
            self.cols.append(col)
            self.vals.append(value)

    def to_csr(self, shape: tuple[int, int]) -> csr_matrix:
        """Assemble the entries into a CSR matrix."""
        mat = coo_matrix(
            (
                np.asarray(self.vals, dtype=np.float64),
                (np.asarray(self.rows, dtype=np.int64), np.asarray(self.cols, dtype=np.int64)),
            ),
            shape=shape,
        )
        return mat.tocsr()


class SystemOptimalProblem:
    """Adjoint formulation of system-optimal routing on a CTM network."""

    def __init__(
        self,
        network: Network,
        ratios: SplitRatios,
        options: ProblemOptions | None = None,
    ) -> None:
        """
        Initialize the problem.

        Args:
            network: The network (read-only).
            ratios: Pre-seeded split ratios. A private copy is kept; the caller's
                store is never modified.
            options: Problem options.

        Raises:
            ConfigurationError: If the turning ratios are inconsistent.
        """
        self.network = network
        self.options = options or ProblemOptions()
        self.layout = VectorLayout(network)
        ratios.validate(network)
        self._ratios = ratios.copy()
        self.simulator = CtmSimulator(network, self.options)

        self._buffers = frozenset(network.buffer_cells())
        self._sinks = frozenset(network.sink_cells())
        self._controlled_origins = tuple(
            origin for origin in network.origins if origin.compliant_commodities
        )

    @property
    def alpha(self) -> float:
        """Share of the compliant commodities."""
        return self.options.alpha

    @property
    def epsilon(self) -> float:
        """Barrier weight."""
        return self.options.epsilon

    @property
    def split_ratios(self) -> SplitRatios:
        """A copy of the pre-seeded split ratios."""
        return self._ratios.copy()

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def get_starting_point(self) -> FloatArray:
        """Return U0 derived from the pre-seeded compliant split ratios.

        Raises:
            ConfigurationError: If alpha is zero.

        Returns:
            Control vector of size T * C.
        """
        if self.alpha == 0:
            raise_configuration_error(_ZERO_ALPHA_ERROR, code=ErrorCode.ZERO_COMPLIANCE)
        layout = self.layout
        control = np.zeros((layout.n_steps, layout.control_block_size))
        for idx, (origin, commodity) in enumerate(layout.control_slots):
            control[:, idx] = self._ratios.origin[origin, :, commodity] / self.alpha
        return control.ravel()

    def control_matrix(self, control: FloatArray) -> FloatArray:
        """Reshape a control vector to (T, C).

        Raises:
            ConfigurationError: If the control has the wrong size.

        Returns:
            A (T, C) view or copy of the control.
        """
        arr = np.asarray(control, dtype=np.float64)
        expected = (self.layout.n_steps, self.layout.control_block_size)
        if arr.size != expected[0] * expected[1] or arr.ndim not in (1, 2):
            raise_configuration_error(
                _CONTROL_SHAPE_ERROR.format(actual=arr.shape, expected=expected),
                code=ErrorCode.INVALID_CONTROL,
            )
        return arr.reshape(expected)

    def sum_of_split_ratios(self, control: FloatArray) -> FloatArray:
        """Unscaled per-origin sums of the controls, shape (n_origins, T)."""
        u = self.control_matrix(control)
        sums = np.zeros((len(self.network.origins), self.layout.n_steps))
        for idx, (origin, _) in enumerate(self.layout.control_slots):
            sums[origin] += u[:, idx]
        return sums

    def ratios_for(self, control: FloatArray) -> SplitRatios:
        """Split ratios with the compliant origin entries set to U * alpha."""
        u = self.control_matrix(control)
        return self._ratios.with_origin_ratios(self.layout.control_slots, u * self.alpha)

    # ------------------------------------------------------------------
    # Forward evaluation and objective
    # ------------------------------------------------------------------

    def forward_simulate(self, control: FloatArray) -> State:
        """Simulate the network under the given controls.

        Args:
            control: Control vector of size T * C.

        Raises:
            NumericalInvalidityError: If the simulation leaves the physical
                domain.

        Returns:
            The resulting State.
        """
        u = self.control_matrix(control)
        if self.options.strict and u.size and (u.min() < 0.0 or u.max() > 1.0):
            warnings.warn(
                _CONTROL_RANGE_WARNING.format(low=u.min(), high=u.max()),
                RuntimeWarning,
                stacklevel=2,
            )
        profiles = self.simulator.run(self.ratios_for(u))
        return State(profiles=profiles, sum_of_split_ratios=self.sum_of_split_ratios(u))

    def total_travel_time(self, state: State) -> float:
        """Sum of the total densities on the network (sinks excluded)."""
        total = 0.0
        sinks = sorted(self._sinks)
        for profile in state.profiles:
            densities = profile.total_density
            total += float(densities.sum()) - float(densities[sinks].sum())
        return total

    def barrier(self, sums: FloatArray) -> float:
        """Barrier penalty -epsilon * sum ln(S - 1) over non-zero demands.

        Raises:
            NumericalInvalidityError: If some S - 1 <= 0 while the barrier is
                active (epsilon > 0).

        Returns:
            The barrier term, to be added to the travel time.
        """
        if self.epsilon == 0:
            return 0.0
        acc = 0.0
        for origin in self._controlled_origins:
            for k in range(self.layout.n_steps):
                if origin.demand[k] != 0:
                    gap = require_barrier_feasible(
                        sums[origin.origin_id, k], origin=origin.origin_id, step=k
                    )
                    acc += math.log(gap)
        return -self.epsilon * acc

    def objective(self, state: State, control: FloatArray) -> float:  # noqa: ARG002
        """Objective J = travel time + barrier for a simulated state."""
        return self.total_travel_time(state) + self.barrier(state.sum_of_split_ratios)

    def objective_of(self, control: FloatArray) -> float:
        """Objective of the state reached with the given controls."""
        return self.objective(self.forward_simulate(control), control)

    def cost(self, x: FloatArray, control: FloatArray) -> float:
        """Objective J evaluated on flat vectors X and U."""
        layout = self.layout
        x = np.asarray(x, dtype=np.float64)
        total = 0.0
        for k in range(layout.n_steps):
            base = layout.block(k)
            densities = x[base : base + layout.density_size].reshape(
                layout.n_cells, layout.width
            )
            for cell in self.network.cells:
                if cell.kind is not CellKind.SINK:
                    total += float(densities[cell.cell_id].sum())
        return total + self.barrier(self.sum_of_split_ratios(control))

    # ------------------------------------------------------------------
    # Residual
    # ------------------------------------------------------------------

    def residual(self, x: FloatArray, control: FloatArray) -> FloatArray:
        """Evaluate H(X, U); zero for a state produced by forward_simulate.

        Raises:
            ConfigurationError: If X or U has the wrong size.

        Returns:
            Array of size ``layout.residual_size``.
        """
        layout = self.layout
        network = self.network
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (layout.state_size,):
            raise_configuration_error(
                _STATE_LENGTH_ERROR.format(actual=x.shape, expected=layout.state_size),
                code=ErrorCode.INVALID_STATE,
            )
        ratios = self.ratios_for(control)
        h = np.zeros(layout.residual_size)
        profiles = [
            Profile.from_block(layout, network, k, x) for k in range(layout.n_steps)
        ]

        for k, profile in enumerate(profiles):
            base = layout.block(k)
            rho = profile.partial_densities

            # Mass conservation
            if k == 0:
                previous = network.initial_densities.copy()
            else:
                prev = profiles[k - 1]
                f_in = prev.in_flows.copy()
                f_out = prev.out_flows.copy()
                f_in[sorted(self._buffers)] = 0.0
                f_out[sorted(self._sinks)] = 0.0
                previous = prev.partial_densities + (
                    self.simulator.dt_over_length[:, None] * (f_in - f_out)
                )
            mass = previous + self.simulator.injection(ratios, k) - rho
            h[base : base + layout.density_size] = mass.ravel()

            # Flow propagation
            totals = rho.sum(axis=1)
            for cell in network.cells:
                t = float(totals[cell.cell_id])
                h[layout.demand(k, cell.cell_id)] = (
                    cell.demand(t) - profile.demand[cell.cell_id]
                )
                h[layout.supply(k, cell.cell_id)] = (
                    cell.supply(t) - profile.supply[cell.cell_id]
                )

            expected_out = np.zeros_like(rho)
            expected_in = np.zeros_like(rho)
            for junction in network.junctions:
                jid = junction.junction_id
                turning = ratios.turning_matrix(k, junction)

                # Aggregate split ratios
                agg = aggregate_split_ratios(junction, rho, turning)
                start = layout.aggregate(k, jid, 0, 0)
                h[start : start + agg.size] = (
                    agg - profile.aggregate_split_ratios[jid]
                ).ravel()

                # Junction flows from the state's demand/supply/aggregate entries
                flows = total_flows(
                    junction,
                    profile.demand,
                    profile.supply,
                    profile.aggregate_split_ratios[jid],
                )
                for a, in_cell in enumerate(junction.incoming):
                    expected_out[in_cell] = flows[a] * commodity_shares(rho[in_cell])
                    for b, out_cell in enumerate(junction.outgoing):
                        expected_in[out_cell] += turning[b] * profile.out_flows[in_cell]

            start = base + layout.out_flow_position
            h[start : start + layout.flow_size] = (expected_out - profile.out_flows).ravel()
            start = base + layout.in_flow_position
            h[start : start + layout.flow_size] = (expected_in - profile.in_flows).ravel()
        return h

    # ------------------------------------------------------------------
    # Jacobians
    # ------------------------------------------------------------------

    def dhdu(self, state: State, control: FloatArray) -> csr_matrix:  # noqa: ARG002
        """dH/dU: demand_o(k) * alpha on the mass rows of the origin buffers.

        Returns:
            CSR matrix of shape (|H|, |U|).
        """
        layout = self.layout
        out = _Triplets("dH/dU")
        for idx, (origin_id, commodity) in enumerate(layout.control_slots):
            origin = self.network.origins[origin_id]
            for k in range(layout.n_steps):
                out.put(
                    layout.mass_conservation(k, origin.buffer_cell, commodity),
                    k * layout.control_block_size + idx,
                    origin.demand[k] * self.alpha,
                )
        return out.to_csr((layout.residual_size, layout.control_size))

    def dhdx(self, state: State, control: FloatArray) -> csr_matrix:
        """dH/dX, lower triangular with -1 on the diagonal.

        Args:
            state: State from :meth:`forward_simulate`.
            control: Control vector used to produce state.

        Raises:
            NumericalInvalidityError: If a derivative is NaN or infinite.

        Returns:
            CSR matrix of shape (|H|, |X|).
        """
        out = _Triplets("dH/dX")
        ratios = self.ratios_for(control)
        self._mass_conservation_terms(out)
        for k, profile in enumerate(state.profiles):
            self._flow_propagation_terms(out, k, profile)
            for junction in self.network.junctions:
                turning = ratios.turning_matrix(k, junction)
                self._aggregate_terms(out, k, profile, junction, turning)
                self._out_flow_terms(out, k, profile, junction)
                self._in_flow_terms(out, k, junction, turning)

        n = self.layout.residual_size
        for index in range(n):
            out.put(index, index, -1.0)
        return out.to_csr((n, self.layout.state_size))

    def djdx(self, state: State, control: FloatArray) -> csr_matrix:  # noqa: ARG002
        """dJ/dX: 1.0 on every density coordinate of a non-sink cell.

        Sink densities get 0, not 1: the objective subtracts the sink totals,
        so a 1 there would disagree with the derivative of :meth:`cost`. This
        departs on purpose from the earlier formulation, which put 1.0 on every
        density coordinate.

        Returns:
            CSR row vector of shape (1, |X|).
        """
        layout = self.layout
        cols = [
            layout.density(k, cell.cell_id, c)
            for k in range(layout.n_steps)
            for cell in self.network.cells
            if cell.kind is not CellKind.SINK
            for c in range(layout.width)
        ]
        data = np.ones(len(cols))
        rows = np.zeros(len(cols), dtype=np.int64)
        return coo_matrix(
            (data, (rows, np.asarray(cols, dtype=np.int64))),
            shape=(1, layout.state_size),
        ).tocsr()

    def djdu(self, state: State, control: FloatArray) -> FloatArray:  # noqa: ARG002
        """dJ/dU: epsilon / (1 - S[o, k]) wherever the origin demand is non-zero.

        Raises:
            NumericalInvalidityError: If S[o, k] <= 1 where the barrier applies.

        Returns:
            Dense vector of size |U|.
        """
        layout = self.layout
        result = np.zeros(layout.control_size)
        if self.epsilon == 0:
            return result
        for idx, (origin_id, _) in enumerate(layout.control_slots):
            origin = self.network.origins[origin_id]
            for k in range(layout.n_steps):
                if origin.demand[k] == 0:
                    continue
                total = state.sum_of_split_ratios[origin_id, k]
                require_barrier_feasible(total, origin=origin_id, step=k)
                result[k * layout.control_block_size + idx] = require_finite(
                    self.epsilon / (1.0 - total), what="dJ/dU"
                )
        return result

    # ------------------------------------------------------------------
    # dH/dX pieces
    # ------------------------------------------------------------------

    def _mass_conservation_terms(self, out: _Triplets) -> None:
        """Dependence of the mass balance of step k on block k - 1."""
        layout = self.layout
        for k in range(1, layout.n_steps):
            for cell in self.network.cells:
                i = cell.cell_id
                ratio = self.simulator.dt_over_length[i]
                for c in range(layout.width):
                    row = layout.mass_conservation(k, i, c)
                    out.put(row, layout.density(k - 1, i, c), 1.0)
                    # Buffers have no in-flow term and sinks no out-flow term.
                    if i not in self._sinks:
                        out.put(row, layout.out_flow(k - 1, i, c), -ratio)
                    if i not in self._buffers:
                        out.put(row, layout.in_flow(k - 1, i, c), ratio)

    def _flow_propagation_terms(self, out: _Triplets, k: int, profile: Profile) -> None:
        """Demand/supply slopes broadcast to every commodity of the cell."""
        layout = self.layout
        totals = profile.total_density
        for cell in self.network.cells:
            i = cell.cell_id
            t = float(totals[i])
            d_demand = cell.demand_derivative(t)
            d_supply = cell.supply_derivative(t)
            for c in range(layout.width):
                col = layout.density(k, i, c)
                out.put(layout.demand_definition(k, i), col, d_demand)
                out.put(layout.supply_definition(k, i), col, d_supply)

    def _aggregate_terms(
        self,
        out: _Triplets,
        k: int,
        profile: Profile,
        junction: Junction,
        turning: FloatArray,
    ) -> None:
        """Quotient-rule terms of beta_agg(in, out) in the incoming densities."""
        layout = self.layout
        for a, in_cell in enumerate(junction.incoming):
            rho = profile.partial_densities[in_cell]
            if rho.sum() == 0:
                continue
            jac = share_derivatives(rho)
            for b in range(len(junction.outgoing)):
                row = layout.aggregate_definition(k, junction.junction_id, a, b)
                grads = turning[b] @ jac
                for c in range(layout.width):
                    out.put(row, layout.density(k, in_cell, c), grads[c])

    def _out_flow_terms(
        self,
        out: _Triplets,
        k: int,
        profile: Profile,
        junction: Junction,
    ) -> None:
        """Junction-policy derivatives of the per-commodity out-flows."""
        layout = self.layout
        jid = junction.junction_id
        partials = flow_partials(
            junction,
            profile.demand,
            profile.supply,
            profile.aggregate_split_ratios[jid],
        )
        for part in partials:
            rho = profile.partial_densities[part.in_cell]
            if rho.sum() == 0:
                continue
            shares = commodity_shares(rho)
            jac = share_derivatives(rho)
            for c in range(layout.width):
                row = layout.out_flow_definition(k, part.in_cell, c)
                for c2 in range(layout.width):
                    out.put(row, layout.density(k, part.in_cell, c2), part.flow * jac[c, c2])
                if shares[c] == 0:
                    continue
                for cell, value in part.d_demand.items():
                    out.put(row, layout.demand(k, cell), shares[c] * value)
                for cell, value in part.d_supply.items():
                    out.put(row, layout.supply(k, cell), shares[c] * value)
                for (in_cell, out_cell), value in part.d_aggregate.items():
                    col = layout.aggregate(
                        k,
                        jid,
                        junction.incoming.index(in_cell),
                        junction.outgoing.index(out_cell),
                    )
                    out.put(row, col, shares[c] * value)

    def _in_flow_terms(
        self,
        out: _Triplets,
        k: int,
        junction: Junction,
        turning: FloatArray,
    ) -> None:
        """In-flows copy the incoming out-flows through the turning ratios."""
        layout = self.layout
        for b, out_cell in enumerate(junction.outgoing):
            for in_cell in junction.incoming:
                for c in range(layout.width):
                    out.put(
                        layout.in_flow_definition(k, out_cell, c),
                        layout.out_flow(k, in_cell, c),
                        turning[b, c],
                    )
