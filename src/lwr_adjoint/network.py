# src/lwr_adjoint/network.py
"""Static topology and physical parameters of a cell-transmission network.

A network is an arena of cells and junctions. Every object carries a dense
integer id equal to its position in the owning tuple; the ids are used
directly as vector indices by :mod:`lwr_adjoint.layout`. Nothing in this
module is mutated after :meth:`NetworkBuilder.build` returns.

Cells come in three kinds:

- ROAD: a chunk of road with a triangular fundamental diagram.
- BUFFER: the queue in front of an origin. Its upstream side is unbounded
  (vehicles are injected directly), so its supply is a constant.
- SINK: the cell after a destination. It never releases vehicles and accepts
  up to its maximum flow per step.

Junctions are tagged once, at construction, with their variant:
SIMPLE (1x1), MERGE (2x1, with priorities) or DIVERGE (1xN).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import (
    ErrorCode,
    raise_configuration_error,
    raise_unsupported_junction,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

FloatArray = npt.NDArray[np.floating[Any]]

_PRIORITY_SUM_TOL = 1e-9

_CELL_PARAMETER_ERROR = "cell parameter {name} must be positive; got {value!r}"
_PRIORITIES_LEN_ERROR = "merge junction needs one priority per incoming cell"
_PRIORITIES_SUM_ERROR = "merge priorities must sum to 1; got {total!r}"
_DEMAND_LEN_ERROR = "origin demand has {actual} steps; expected {expected}"
_DUPLICATE_COMMODITY_ERROR = "compliant commodity {commodity} is owned twice"
_COMMODITY_RANGE_ERROR = "compliant commodity {commodity} outside 1..{n}"
_UPSTREAM_ERROR = "cell {cell} must be fed by exactly one junction; got {count}"
_DOWNSTREAM_ERROR = "cell {cell} must drain into exactly one junction; got {count}"
_INITIAL_SHAPE_ERROR = "initial_densities shape {actual} does not match {expected}"
_UNKNOWN_CELL_ERROR = "junction {junction} references unknown cell {cell}"


class CellKind(StrEnum):
    """Role of a cell in the network."""

    ROAD = "road"
    BUFFER = "buffer"
    SINK = "sink"


class JunctionKind(StrEnum):
    """Supported junction topologies."""

    SIMPLE = "simple"
    MERGE = "merge"
    DIVERGE = "diverge"


@dataclass(frozen=True, slots=True)
class Cell:
    """One cell of the discretized network.

    Attributes:
        cell_id: Dense id, equal to the position in ``Network.cells``.
        length: Cell length.
        free_flow_speed: Free-flow speed v.
        congestion_speed: Congestion-wave speed w.
        jam_density: Jam density.
        max_flow: Capacity F.
        kind: Road, buffer or sink.
    """

    cell_id: int
    length: float
    free_flow_speed: float
    congestion_speed: float
    jam_density: float
    max_flow: float
    kind: CellKind = CellKind.ROAD

    def demand(self, total_density: float) -> float:
        """Sending function of the triangular fundamental diagram."""
        if self.kind is CellKind.SINK:
            return 0.0
        return min(self.free_flow_speed * total_density, self.max_flow)

    def supply(self, total_density: float) -> float:
        """Receiving function of the triangular fundamental diagram."""
        if self.kind is not CellKind.ROAD:
            return self.max_flow
        return min(
            self.congestion_speed * (self.jam_density - total_density),
            self.max_flow,
        )

    def demand_derivative(self, total_density: float) -> float:
        """d demand / d total_density on the active branch (0 at capacity)."""
        if self.kind is CellKind.SINK:
            return 0.0
        if self.free_flow_speed * total_density < self.max_flow:
            return self.free_flow_speed
        return 0.0

    def supply_derivative(self, total_density: float) -> float:
        """d supply / d total_density on the active branch (0 at capacity)."""
        if self.kind is not CellKind.ROAD:
            return 0.0
        if self.congestion_speed * (self.jam_density - total_density) < self.max_flow:
            return -self.congestion_speed
        return 0.0


@dataclass(frozen=True, slots=True)
class Junction:
    """A junction between incoming and outgoing cells.

    Attributes:
        junction_id: Dense id, equal to the position in ``Network.junctions``.
        incoming: Ordered ids of the incoming cells.
        outgoing: Ordered ids of the outgoing cells.
        kind: Variant tag fixed at construction.
        priorities: Merge priorities aligned with ``incoming`` (MERGE only).
    """

    junction_id: int
    incoming: tuple[int, ...]
    outgoing: tuple[int, ...]
    kind: JunctionKind
    priorities: tuple[float, ...] = ()

    @classmethod
    def build(
        cls,
        junction_id: int,
        incoming: Sequence[int],
        outgoing: Sequence[int],
        priorities: Sequence[float] | None = None,
    ) -> Junction:
        """Create a junction, resolving its variant from its shape.

        Args:
            junction_id: Dense junction id.
            incoming: Incoming cell ids.
            outgoing: Outgoing cell ids.
            priorities: Merge priorities; defaults to an even split.

        Raises:
            ConfigurationError: If the shape is not 1x1, 2x1 or 1xN, or if the
                merge priorities are malformed.

        Returns:
            The junction.
        """
        n_in, n_out = len(incoming), len(outgoing)
        if n_in == 1 and n_out == 1:
            kind = JunctionKind.SIMPLE
        elif n_in == 2 and n_out == 1:
            kind = JunctionKind.MERGE
        elif n_in == 1 and n_out >= 2:
            kind = JunctionKind.DIVERGE
        else:
            raise_unsupported_junction(junction_id, n_in, n_out)

        prio: tuple[float, ...] = ()
        if kind is JunctionKind.MERGE:
            prio = (0.5, 0.5) if priorities is None else tuple(map(float, priorities))
            if len(prio) != n_in:
                raise_configuration_error(_PRIORITIES_LEN_ERROR)
            if abs(sum(prio) - 1.0) > _PRIORITY_SUM_TOL:
                raise_configuration_error(_PRIORITIES_SUM_ERROR.format(total=sum(prio)))

        return cls(
            junction_id=junction_id,
            incoming=tuple(int(c) for c in incoming),
            outgoing=tuple(int(c) for c in outgoing),
            kind=kind,
            priorities=prio,
        )

    def pairs(self) -> list[tuple[int, int]]:
        """Return the (incoming, outgoing) cell pairs in layout order."""
        return [(i, o) for i in self.incoming for o in self.outgoing]


@dataclass(frozen=True, slots=True)
class Origin:
    """A source of vehicles feeding the network through a buffer cell.

    Attributes:
        origin_id: Dense id, equal to the position in ``Network.origins``.
        junction_id: Junction draining the buffer cell.
        buffer_cell: Id of the buffer cell.
        demand: Vehicles injected into the buffer per time step, length T.
        compliant_commodities: Compliant commodity ids owned by this origin.
    """

    origin_id: int
    junction_id: int
    buffer_cell: int
    demand: FloatArray
    compliant_commodities: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class Destination:
    """A sink of vehicles.

    Attributes:
        destination_id: Dense id, equal to the position in
            ``Network.destinations``.
        junction_id: Junction feeding the sink cell.
        sink_cell: Id of the sink cell.
    """

    destination_id: int
    junction_id: int
    sink_cell: int


@dataclass(frozen=True, slots=True)
class Network:
    """Immutable cell-transmission network.

    Attributes:
        cells: All cells, indexed by id.
        junctions: All junctions, indexed by id.
        origins: All origins, indexed by id.
        destinations: All destinations, indexed by id.
        n_commodities: Number C of compliant commodities (ids 1..C).
        n_steps: Horizon T.
        initial_densities: Densities before the first step, shape
            (n_cells, C + 1).
    """

    cells: tuple[Cell, ...]
    junctions: tuple[Junction, ...]
    origins: tuple[Origin, ...]
    destinations: tuple[Destination, ...]
    n_commodities: int
    n_steps: int
    initial_densities: FloatArray
    upstream: tuple[int | None, ...] = field(default=(), repr=False)
    downstream: tuple[int | None, ...] = field(default=(), repr=False)

    @property
    def n_cells(self) -> int:
        """Number of cells."""
        return len(self.cells)

    def upstream_junction(self, cell: int) -> int | None:
        """Return the junction feeding cell, or None for buffer cells."""
        return self.upstream[cell]

    def downstream_junction(self, cell: int) -> int | None:
        """Return the junction the cell drains into, or None for sink cells."""
        return self.downstream[cell]

    def buffer_cells(self) -> list[int]:
        """Return the ids of all buffer cells."""
        return [o.buffer_cell for o in self.origins]

    def sink_cells(self) -> list[int]:
        """Return the ids of all sink cells."""
        return [d.sink_cell for d in self.destinations]


class NetworkBuilder:
    """Arena allocator for cells and junctions.

    Ids are handed out in allocation order and never reset, so a cell id
    returned by :meth:`add_cell` is its final index in the built network.
    """

    def __init__(self, n_steps: int) -> None:
        """
        Initialize the builder.

        Args:
            n_steps: Horizon T, used to validate origin demand profiles.
        """
        self.n_steps = int(n_steps)
        self._cells: list[Cell] = []
        self._junctions: list[Junction] = []
        self._origins: list[Origin] = []
        self._destinations: list[Destination] = []
        self._initial: dict[tuple[int, int], float] = {}

    def add_cell(
        self,
        *,
        length: float,
        free_flow_speed: float,
        congestion_speed: float,
        jam_density: float,
        max_flow: float,
        kind: CellKind = CellKind.ROAD,
    ) -> int:
        """Allocate a cell and return its id.

        Raises:
            ConfigurationError: If a physical parameter is not positive.

        Returns:
            The new cell id.
        """
        params = {
            "length": length,
            "free_flow_speed": free_flow_speed,
            "congestion_speed": congestion_speed,
            "jam_density": jam_density,
            "max_flow": max_flow,
        }
        for name, value in params.items():
            if not value > 0:
                raise_configuration_error(
                    _CELL_PARAMETER_ERROR.format(name=name, value=value)
                )
        cell_id = len(self._cells)
        self._cells.append(
            Cell(cell_id=cell_id, kind=kind, **{k: float(v) for k, v in params.items()})
        )
        return cell_id

    def add_junction(
        self,
        incoming: Sequence[int],
        outgoing: Sequence[int],
        priorities: Sequence[float] | None = None,
    ) -> int:
        """Allocate a junction and return its id.

        Returns:
            The new junction id.
        """
        junction_id = len(self._junctions)
        for cell in (*incoming, *outgoing):
            if not 0 <= cell < len(self._cells):
                raise_configuration_error(
                    _UNKNOWN_CELL_ERROR.format(junction=junction_id, cell=cell)
                )
        self._junctions.append(
            Junction.build(junction_id, incoming, outgoing, priorities)
        )
        return junction_id

    def add_origin(
        self,
        outgoing: Sequence[int],
        demand: Sequence[float] | FloatArray,
        *,
        compliant_commodities: Sequence[int] = (),
        buffer_max_flow: float = 1e6,
        buffer_speed: float = 1.0,
        buffer_length: float = 1.0,
    ) -> int:
        """Allocate a buffer cell and the junction draining it into outgoing.

        Args:
            outgoing: First cells of the links leaving the origin.
            demand: Vehicles injected per time step (length T).
            compliant_commodities: Compliant commodity ids routed from here.
            buffer_max_flow: Capacity of the buffer cell.
            buffer_speed: Free-flow speed of the buffer.
            buffer_length: Length of the buffer; buffer_speed * dt must not
                exceed it.

        Raises:
            ConfigurationError: If the demand profile has the wrong length.

        Returns:
            The new origin id.
        """
        demand_arr = np.asarray(demand, dtype=np.float64)
        if demand_arr.shape != (self.n_steps,):
            raise_configuration_error(
                _DEMAND_LEN_ERROR.format(
                    actual=demand_arr.shape, expected=(self.n_steps,)
                )
            )
        buffer = self.add_cell(
            length=buffer_length,
            free_flow_speed=buffer_speed,
            congestion_speed=buffer_speed,
            jam_density=buffer_max_flow,
            max_flow=buffer_max_flow,
            kind=CellKind.BUFFER,
        )
        junction = self.add_junction([buffer], outgoing)
        origin_id = len(self._origins)
        self._origins.append(
            Origin(
                origin_id=origin_id,
                junction_id=junction,
                buffer_cell=buffer,
                demand=demand_arr,
                compliant_commodities=tuple(int(c) for c in compliant_commodities),
            )
        )
        return origin_id

    def add_destination(
        self,
        incoming: Sequence[int],
        *,
        priorities: Sequence[float] | None = None,
        sink_max_flow: float = 1e6,
    ) -> int:
        """Allocate a sink cell and the junction feeding it from incoming.

        Returns:
            The new destination id.
        """
        sink = self.add_cell(
            length=1.0,
            free_flow_speed=1.0,
            congestion_speed=1.0,
            jam_density=sink_max_flow,
            max_flow=sink_max_flow,
            kind=CellKind.SINK,
        )
        junction = self.add_junction(incoming, [sink], priorities)
        destination_id = len(self._destinations)
        self._destinations.append(
            Destination(
                destination_id=destination_id,
                junction_id=junction,
                sink_cell=sink,
            )
        )
        return destination_id

    def set_initial_density(self, cell: int, commodity: int, value: float) -> None:
        """Record the density of one commodity in one cell before step 0."""
        self._initial[(int(cell), int(commodity))] = float(value)

    def build(self) -> Network:
        """Freeze the arena into a validated :class:`Network`.

        Raises:
            ConfigurationError: If the topology or the commodities are invalid.

        Returns:
            The network.
        """
        owned: list[int] = [c for o in self._origins for c in o.compliant_commodities]
        n_commodities = len(owned)
        seen: set[int] = set()
        for commodity in owned:
            if commodity in seen:
                raise_configuration_error(
                    _DUPLICATE_COMMODITY_ERROR.format(commodity=commodity)
                )
            if not 1 <= commodity <= n_commodities:
                raise_configuration_error(
                    _COMMODITY_RANGE_ERROR.format(commodity=commodity, n=n_commodities)
                )
            seen.add(commodity)

        n_cells = len(self._cells)
        upstream: list[list[int]] = [[] for _ in range(n_cells)]
        downstream: list[list[int]] = [[] for _ in range(n_cells)]
        for junction in self._junctions:
            for cell in junction.outgoing:
                upstream[cell].append(junction.junction_id)
            for cell in junction.incoming:
                downstream[cell].append(junction.junction_id)

        for cell in self._cells:
            n_up = len(upstream[cell.cell_id])
            n_down = len(downstream[cell.cell_id])
            expected_up = 0 if cell.kind is CellKind.BUFFER else 1
            expected_down = 0 if cell.kind is CellKind.SINK else 1
            if n_up != expected_up:
                raise_configuration_error(
                    _UPSTREAM_ERROR.format(cell=cell.cell_id, count=n_up)
                )
            if n_down != expected_down:
                raise_configuration_error(
                    _DOWNSTREAM_ERROR.format(cell=cell.cell_id, count=n_down)
                )

        initial = np.zeros((n_cells, n_commodities + 1), dtype=np.float64)
        for (cell, commodity), value in self._initial.items():
            if not (0 <= cell < n_cells and 0 <= commodity <= n_commodities):
                raise_configuration_error(
                    _INITIAL_SHAPE_ERROR.format(
                        actual=(cell, commodity), expected=initial.shape
                    ),
                    code=ErrorCode.INVALID_STATE,
                )
            initial[cell, commodity] = value

        return Network(
            cells=tuple(self._cells),
            junctions=tuple(self._junctions),
            origins=tuple(self._origins),
            destinations=tuple(self._destinations),
            n_commodities=n_commodities,
            n_steps=self.n_steps,
            initial_densities=initial,
            upstream=tuple(u[0] if u else None for u in upstream),
            downstream=tuple(d[0] if d else None for d in downstream),
        )
