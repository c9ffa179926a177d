# src/lwr_adjoint/layout.py
"""Index arithmetic for the flattened state, control and residual vectors.

The state vector X and the residual vector H consist of T blocks with the
same internal layout (N cells, C compliant commodities, commodity 0 being
the non-compliant flow):

    [ densities        N * (C + 1)   cell-major, commodity-minor
    | demand, supply   2 * N         (demand(i), supply(i)) pairs
    | aggregate SR     sum_j |in_j| * |out_j|   junction by junction,
                                      incoming-major, outgoing-minor
    | out-flows        N * (C + 1)
    | in-flows         N * (C + 1) ]

In H the five segments hold, respectively, the mass-conservation, flow-
propagation, aggregate split-ratio, out-flow and in-flow residuals, so H
index i is "the definition of X index i". The control vector U has T blocks
of C entries, one per compliant commodity, ordered origin by origin.

Only block sizes and offsets are stored; every index is computed on demand.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .network import Network


_INDEX_OOB_ERROR = "index {index} outside [0, {size})"
_UNKNOWN_COMMODITY_ERROR = "commodity {commodity} is not a compliant commodity"


class Segment(StrEnum):
    """Segments of one X (or H) block."""

    DENSITY = "density"
    DEMAND = "demand"
    SUPPLY = "supply"
    AGGREGATE = "aggregate"
    OUT_FLOW = "out_flow"
    IN_FLOW = "in_flow"


@dataclass(frozen=True, slots=True)
class StateCoordinate:
    """Semantic coordinate of one entry of X (or H).

    Attributes:
        segment: Segment of the block.
        step: Time step k.
        first: Cell id (or junction id for AGGREGATE).
        second: Commodity (density/flows), incoming position (AGGREGATE) or 0.
        third: Outgoing position (AGGREGATE only), else 0.
    """

    segment: Segment
    step: int
    first: int
    second: int = 0
    third: int = 0


class VectorLayout:
    """Deterministic bijections between semantic quantities and flat indices."""

    def __init__(self, network: Network) -> None:
        """
        Compute block sizes from the (fixed) network topology.

        Args:
            network: The network.
        """
        self.n_steps = network.n_steps
        self.n_cells = network.n_cells
        self.n_commodities = network.n_commodities
        self.n_origins = len(network.origins)
        self.n_destinations = len(network.destinations)

        self.width = self.n_commodities + 1
        self.density_size = self.n_cells * self.width
        self.demand_supply_size = 2 * self.n_cells

        self._aggregate_offsets: list[int] = []
        self._junction_shapes: list[tuple[int, int]] = []
        offset = 0
        for junction in network.junctions:
            self._aggregate_offsets.append(offset)
            shape = (len(junction.incoming), len(junction.outgoing))
            self._junction_shapes.append(shape)
            offset += shape[0] * shape[1]
        self.aggregate_size = offset

        self.flow_size = self.density_size
        self.demand_supply_position = self.density_size
        self.aggregate_position = self.demand_supply_position + self.demand_supply_size
        self.out_flow_position = self.aggregate_position + self.aggregate_size
        self.in_flow_position = self.out_flow_position + self.flow_size
        self.block_size = self.in_flow_position + self.flow_size

        slots: list[tuple[int, int]] = [
            (origin.origin_id, commodity)
            for origin in network.origins
            for commodity in origin.compliant_commodities
        ]
        self.control_slots: tuple[tuple[int, int], ...] = tuple(slots)
        self._control_index = {c: idx for idx, (_, c) in enumerate(slots)}
        self.control_block_size = len(slots)

    # ------------------------------------------------------------------
    # Sizes
    # ------------------------------------------------------------------

    @property
    def state_size(self) -> int:
        """Size of X."""
        return self.n_steps * self.block_size

    @property
    def residual_size(self) -> int:
        """Size of H (equal to the size of X)."""
        return self.n_steps * self.block_size

    @property
    def control_size(self) -> int:
        """Size of U."""
        return self.n_steps * self.control_block_size

    # ------------------------------------------------------------------
    # X / H offsets
    # ------------------------------------------------------------------

    def block(self, k: int) -> int:
        """Offset of block k."""
        return k * self.block_size

    def density(self, k: int, cell: int, commodity: int) -> int:
        """Index of rho(k, cell, commodity)."""
        return k * self.block_size + cell * self.width + commodity

    def demand(self, k: int, cell: int) -> int:
        """Index of demand(k, cell)."""
        return k * self.block_size + self.demand_supply_position + 2 * cell

    def supply(self, k: int, cell: int) -> int:
        """Index of supply(k, cell)."""
        return self.demand(k, cell) + 1

    def aggregate(self, k: int, junction: int, in_pos: int, out_pos: int) -> int:
        """Index of beta_agg(k, junction, incoming[in_pos], outgoing[out_pos])."""
        n_out = self._junction_shapes[junction][1]
        return (
            k * self.block_size
            + self.aggregate_position
            + self._aggregate_offsets[junction]
            + in_pos * n_out
            + out_pos
        )

    def out_flow(self, k: int, cell: int, commodity: int) -> int:
        """Index of f_out(k, cell, commodity)."""
        return k * self.block_size + self.out_flow_position + cell * self.width + commodity

    def in_flow(self, k: int, cell: int, commodity: int) -> int:
        """Index of f_in(k, cell, commodity)."""
        return k * self.block_size + self.in_flow_position + cell * self.width + commodity

    # The residual H shares the X layout: row i defines column i.
    mass_conservation = density
    demand_definition = demand
    supply_definition = supply
    aggregate_definition = aggregate
    out_flow_definition = out_flow
    in_flow_definition = in_flow

    # ------------------------------------------------------------------
    # U offsets
    # ------------------------------------------------------------------

    def control_index(self, commodity: int) -> int:
        """Position of a compliant commodity inside a control block.

        Raises:
            KeyError: If the commodity is not compliant.
        """
        try:
            return self._control_index[commodity]
        except KeyError:
            raise KeyError(
                _UNKNOWN_COMMODITY_ERROR.format(commodity=commodity)
            ) from None

    def control(self, k: int, commodity: int) -> int:
        """Index of U(k, commodity)."""
        return k * self.control_block_size + self.control_index(commodity)

    def unflatten_control(self, index: int) -> tuple[int, int]:
        """Inverse of :meth:`control`: returns (k, commodity).

        Raises:
            IndexError: If index is outside U.
        """
        if not 0 <= index < self.control_size:
            raise IndexError(_INDEX_OOB_ERROR.format(index=index, size=self.control_size))
        k, pos = divmod(index, self.control_block_size)
        return k, self.control_slots[pos][1]

    # ------------------------------------------------------------------
    # Inverse of the X / H offsets
    # ------------------------------------------------------------------

    def unflatten_state(self, index: int) -> StateCoordinate:
        """Inverse of the X offsets.

        Raises:
            IndexError: If index is outside X.

        Returns:
            The semantic coordinate of index.
        """
        if not 0 <= index < self.state_size:
            raise IndexError(_INDEX_OOB_ERROR.format(index=index, size=self.state_size))
        k, r = divmod(index, self.block_size)
        if r < self.demand_supply_position:
            cell, commodity = divmod(r, self.width)
            return StateCoordinate(Segment.DENSITY, k, cell, commodity)
        if r < self.aggregate_position:
            cell, which = divmod(r - self.demand_supply_position, 2)
            segment = Segment.DEMAND if which == 0 else Segment.SUPPLY
            return StateCoordinate(segment, k, cell)
        if r < self.out_flow_position:
            r -= self.aggregate_position
            junction = self._junction_at(r)
            local = r - self._aggregate_offsets[junction]
            in_pos, out_pos = divmod(local, self._junction_shapes[junction][1])
            return StateCoordinate(Segment.AGGREGATE, k, junction, in_pos, out_pos)
        if r < self.in_flow_position:
            cell, commodity = divmod(r - self.out_flow_position, self.width)
            return StateCoordinate(Segment.OUT_FLOW, k, cell, commodity)
        cell, commodity = divmod(r - self.in_flow_position, self.width)
        return StateCoordinate(Segment.IN_FLOW, k, cell, commodity)

    def flatten_state(self, coord: StateCoordinate) -> int:
        """Index of a semantic coordinate (inverse of :meth:`unflatten_state`)."""
        match coord.segment:
            case Segment.DENSITY:
                return self.density(coord.step, coord.first, coord.second)
            case Segment.DEMAND:
                return self.demand(coord.step, coord.first)
            case Segment.SUPPLY:
                return self.supply(coord.step, coord.first)
            case Segment.AGGREGATE:
                return self.aggregate(coord.step, coord.first, coord.second, coord.third)
            case Segment.OUT_FLOW:
                return self.out_flow(coord.step, coord.first, coord.second)
            case Segment.IN_FLOW:
                return self.in_flow(coord.step, coord.first, coord.second)
        raise ValueError(coord.segment)

    def _junction_at(self, local: int) -> int:
        """Junction owning offset local of the aggregate segment."""
        for junction in range(len(self._aggregate_offsets)):
            start = self._aggregate_offsets[junction]
            n_in, n_out = self._junction_shapes[junction]
            if start <= local < start + n_in * n_out:
                return junction
        raise IndexError(_INDEX_OOB_ERROR.format(index=local, size=self.aggregate_size))
