# src/lwr_adjoint/split_ratios.py
"""Split-ratio store consumed by the forward simulator.

The store holds two tables:

- origin ratios: for every origin, time step and commodity, the fraction of
  the origin demand injected into the buffer as that commodity;
- turning ratios: for every DIVERGE junction, time step, outgoing cell and
  commodity, the fraction of that commodity's out-flow entering the
  outgoing cell.

SIMPLE and MERGE junctions have no table; their turning ratio is 1.

The store is an explicit value owned by whoever runs a simulation. The
forward evaluator never writes into a shared store: it derives a fresh copy
with :meth:`SplitRatios.with_origin_ratios` for each run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import ErrorCode, raise_configuration_error
from .network import Junction, JunctionKind, Network

if TYPE_CHECKING:
    from collections.abc import Sequence

FloatArray = npt.NDArray[np.floating[Any]]

_RATIO_SUM_TOL = 1e-9

_NOT_DIVERGE_ERROR = "junction {junction} is not a diverge junction"
_NOT_OUTGOING_ERROR = "cell {cell} is not an outgoing cell of junction {junction}"
_RATIO_SUM_ERROR = (
    "turning ratios of commodity {commodity} at junction {junction}, step {step} "
    "sum to {total!r}; expected 0 or 1"
)
_UNROUTED_ERROR = (
    "commodity {commodity} reaches diverge junction {junction} but its turning "
    "ratios at step {step} sum to {total!r}; expected 1"
)
_VALUES_SHAPE_ERROR = "values shape {actual} does not match {expected}"


@dataclass(slots=True)
class SplitRatios:
    """Origin and turning split ratios.

    Attributes:
        origin: Array of shape (n_origins, T, C + 1).
        turning: Mapping from DIVERGE junction id to an array of shape
            (T, n_outgoing, C + 1).
    """

    origin: FloatArray
    turning: dict[int, FloatArray]

    @classmethod
    def empty(cls, network: Network, alpha: float) -> SplitRatios:
        """Create a store with the non-compliant share set to 1 - alpha.

        Compliant origin ratios and every turning ratio start at zero.

        Args:
            network: Network the store describes.
            alpha: Share of the compliant commodities.

        Returns:
            A new store.
        """
        n_c = network.n_commodities + 1
        origin = np.zeros((len(network.origins), network.n_steps, n_c))
        origin[:, :, 0] = 1.0 - alpha
        turning = {
            j.junction_id: np.zeros((network.n_steps, len(j.outgoing), n_c))
            for j in network.junctions
            if j.kind is JunctionKind.DIVERGE
        }
        return cls(origin=origin, turning=turning)

    def copy(self) -> SplitRatios:
        """Return a deep copy of the store."""
        return SplitRatios(
            origin=self.origin.copy(),
            turning={j: arr.copy() for j, arr in self.turning.items()},
        )

    def set_turning_ratio(
        self,
        junction: Junction,
        out_cell: int,
        commodity: int,
        value: float | FloatArray,
    ) -> None:
        """Set the turning ratio of commodity into out_cell for every step.

        Args:
            junction: A DIVERGE junction.
            out_cell: One of the junction's outgoing cells.
            commodity: Commodity id (0 for the non-compliant flow).
            value: Scalar or per-step array of ratios.

        Raises:
            ConfigurationError: If the junction is not a diverge or the cell
                is not one of its outgoing cells.
        """
        if junction.kind is not JunctionKind.DIVERGE:
            raise_configuration_error(
                _NOT_DIVERGE_ERROR.format(junction=junction.junction_id)
            )
        if out_cell not in junction.outgoing:
            raise_configuration_error(
                _NOT_OUTGOING_ERROR.format(
                    cell=out_cell, junction=junction.junction_id
                )
            )
        pos = junction.outgoing.index(out_cell)
        self.turning[junction.junction_id][:, pos, commodity] = value

    def turning_matrix(self, k: int, junction: Junction) -> FloatArray:
        """Return per-commodity ratios at step k, shape (n_out, C + 1).

        SIMPLE and MERGE junctions yield a matrix of ones.
        """
        if junction.kind is not JunctionKind.DIVERGE:
            n_c = self.origin.shape[2]
            return np.ones((len(junction.outgoing), n_c))
        return self.turning[junction.junction_id][k]

    def with_origin_ratios(
        self,
        slots: Sequence[tuple[int, int]],
        values: FloatArray,
    ) -> SplitRatios:
        """Return a copy with compliant origin ratios replaced.

        Args:
            slots: (origin, commodity) pairs, one per column of values.
            values: Array of shape (T, len(slots)).

        Raises:
            ConfigurationError: If values has the wrong shape.

        Returns:
            A new store; the receiver is left untouched.
        """
        values = np.asarray(values, dtype=np.float64)
        expected = (self.origin.shape[1], len(slots))
        if values.shape != expected:
            raise_configuration_error(
                _VALUES_SHAPE_ERROR.format(actual=values.shape, expected=expected),
                code=ErrorCode.INVALID_CONTROL,
            )
        out = self.copy()
        for col, (origin, commodity) in enumerate(slots):
            out.origin[origin, :, commodity] = values[:, col]
        return out

    def validate(self, network: Network) -> None:
        """Check the turning ratios against the commodities that use them.

        A commodity reaches a cell if it can be injected at an origin feeding
        it (any origin with a non-zero ratio for commodity 0, the owning
        origin for a compliant commodity) or starts there with a positive
        initial density. At every diverge a commodity reaches, its ratios
        must sum to 1 at every step so that no vehicle is dropped. Elsewhere
        they must sum to 0 or 1.

        Raises:
            ConfigurationError: If a diverge splits a commodity inconsistently.
        """
        for commodity in range(self.origin.shape[2]):
            reached = self._reached_diverges(network, commodity)
            for junction_id, table in self.turning.items():
                totals = table[:, :, commodity].sum(axis=1)
                ok = np.abs(totals - 1.0) <= _RATIO_SUM_TOL
                if junction_id not in reached:
                    ok |= np.abs(totals) <= _RATIO_SUM_TOL
                if np.all(ok):
                    continue
                step = int(np.argwhere(~ok)[0][0])
                template = (
                    _UNROUTED_ERROR if junction_id in reached else _RATIO_SUM_ERROR
                )
                raise_configuration_error(
                    template.format(
                        commodity=commodity,
                        junction=junction_id,
                        step=step,
                        total=float(totals[step]),
                    )
                )

    def _reached_diverges(self, network: Network, commodity: int) -> set[int]:
        """Ids of the diverge junctions commodity can flow into."""
        pending = [
            int(cell) for cell in np.flatnonzero(network.initial_densities[:, commodity])
        ]
        for origin in network.origins:
            if commodity == 0:
                injects = bool(np.any(self.origin[origin.origin_id, :, 0]))
            else:
                injects = commodity in origin.compliant_commodities
            if injects:
                pending.append(origin.buffer_cell)

        seen: set[int] = set()
        diverges: set[int] = set()
        while pending:
            cell = pending.pop()
            if cell in seen:
                continue
            seen.add(cell)
            junction_id = network.downstream_junction(cell)
            if junction_id is None:
                continue
            junction = network.junctions[junction_id]
            if junction.kind is JunctionKind.DIVERGE:
                diverges.add(junction_id)
                used = np.any(self.turning[junction_id][:, :, commodity], axis=0)
                pending.extend(c for c, on in zip(junction.outgoing, used, strict=True) if on)
            else:
                pending.extend(junction.outgoing)
        return diverges
