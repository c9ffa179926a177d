# src/lwr_adjoint/junction_policy.py
"""Junction flow allocation and its closed-form derivatives.

For every junction the policy computes, per incoming cell, a *total*
out-flow, then splits it between commodities in proportion to the partial
densities of the incoming cell:

    f_out(in, c) = F_in * rho(in, c) / rho_total(in)

and routes commodity c into outgoing cell ``out`` with its turning ratio:

    f_in(out, c) = sum_in beta_c(in, out) * f_out(in, c)

Supported variants:

- SIMPLE (1x1):   F = min(demand_in, supply_out)
- MERGE (2x1):    F = min(d1 + d2, supply); when congested the flow is split
                  by priority, capping an input at its own demand and giving
                  the remainder to the other input.
- DIVERGE (1xN):  F = min(demand_in, min_j supply_j / beta_agg(in, j)) over the
                  outputs with a positive aggregate split ratio.

The derivative kernels return the partials of each total flow F with respect
to demand, supply and aggregate split ratio entries of the state vector. The
commodity share adds the quotient-rule term with respect to the partial
densities, see :func:`share_derivatives`.

Ties (for example demand == supply) select the demand branch, both for the
flow value and for its one-sided derivative.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import raise_unsupported_junction
from .network import Junction, JunctionKind

if TYPE_CHECKING:
    from collections.abc import Sequence

FloatArray = npt.NDArray[np.floating[Any]]


@dataclass(slots=True)
class FlowPartials:
    """Total out-flow of one incoming cell and its partial derivatives.

    Attributes:
        in_cell: Incoming cell id.
        flow: Total out-flow F of the cell.
        d_demand: Mapping cell id -> dF / d demand(cell).
        d_supply: Mapping cell id -> dF / d supply(cell).
        d_aggregate: Mapping (in, out) -> dF / d beta_agg(in, out).
    """

    in_cell: int
    flow: float
    d_demand: dict[int, float] = field(default_factory=dict)
    d_supply: dict[int, float] = field(default_factory=dict)
    d_aggregate: dict[tuple[int, int], float] = field(default_factory=dict)


@dataclass(slots=True)
class JunctionFlows:
    """Per-commodity flows through one junction.

    Attributes:
        out_flows: Incoming cell id -> out-flow per commodity, shape (C + 1,).
        in_flows: Outgoing cell id -> in-flow per commodity, shape (C + 1,).
    """

    out_flows: dict[int, FloatArray]
    in_flows: dict[int, FloatArray]


# =============================================================================
# Scalar kernels
# =============================================================================


def simple_flow(demand: float, supply: float) -> float:
    """Total flow through a 1x1 junction."""
    return min(demand, supply)


def merge_flows(
    demand1: float,
    demand2: float,
    supply: float,
    priority1: float,
    priority2: float,
) -> tuple[float, float]:
    """Flows of both inputs of a 2x1 priority merge.

    Args:
        demand1: Demand of the first incoming cell.
        demand2: Demand of the second incoming cell.
        supply: Supply of the outgoing cell.
        priority1: Priority of the first incoming cell.
        priority2: Priority of the second incoming cell.

    Returns:
        (f1, f2) with f1 + f2 == min(demand1 + demand2, supply).
    """
    total_demand = demand1 + demand2
    if total_demand <= supply:
        return demand1, demand2
    flow = supply
    if priority1 * flow > demand1:
        f1 = demand1
    elif priority2 * flow > demand2:
        f1 = flow - demand2
    else:
        f1 = priority1 * flow
    return f1, flow - f1


def diverge_flow(
    demand: float,
    supplies: Sequence[float] | FloatArray,
    aggregate: Sequence[float] | FloatArray,
) -> tuple[float, int | None]:
    """Total out-flow of a 1xN diverge and the binding output.

    Args:
        demand: Demand of the incoming cell.
        supplies: Supply of each outgoing cell.
        aggregate: Aggregate split ratio towards each outgoing cell.

    Returns:
        (flow, position) where position is the index of the outgoing cell
        minimizing supply / beta among positive betas (None if every beta
        is zero).
    """
    best: float | None = None
    best_pos: int | None = None
    for pos, (supply, beta) in enumerate(zip(supplies, aggregate, strict=True)):
        if beta != 0:
            ratio = supply / beta
            if best is None or ratio < best:
                best = ratio
                best_pos = pos
    if best is None:
        return demand, None
    return min(demand, best), best_pos


# =============================================================================
# Vectorized helpers over a junction
# =============================================================================


def commodity_shares(densities: FloatArray) -> FloatArray:
    """Return rho_c / rho_total for one cell (zeros if the cell is empty)."""
    total = float(densities.sum())
    if total == 0:
        return np.zeros_like(densities)
    return densities / total


def share_derivatives(densities: FloatArray) -> FloatArray:
    """Jacobian of rho_c / rho_total with respect to the partial densities.

    Entry [c, c'] is (delta_cc' * rho_total - rho_c) / rho_total**2. The
    caller must skip empty cells.

    Args:
        densities: Partial densities of one cell, shape (C + 1,).

    Returns:
        Array of shape (C + 1, C + 1).
    """
    total = float(densities.sum())
    n_c = densities.shape[0]
    return (np.eye(n_c) * total - densities[:, None]) / (total * total)


def aggregate_split_ratios(
    junction: Junction,
    partial_densities: FloatArray,
    turning: FloatArray,
) -> FloatArray:
    """Aggregate split ratios beta_agg(in, out) of a junction.

    beta_agg(in, out) = sum_c beta_c(in, out) * rho(in, c) / rho_total(in);
    for an empty incoming cell the non-compliant ratio beta_0 is used.

    Args:
        junction: The junction.
        partial_densities: Partial densities of every cell, shape (N, C + 1).
        turning: Per-commodity turning ratios, shape (n_out, C + 1).

    Returns:
        Array of shape (n_in, n_out).
    """
    out = np.empty((len(junction.incoming), len(junction.outgoing)))
    for a, in_cell in enumerate(junction.incoming):
        rho = partial_densities[in_cell]
        if rho.sum() == 0:
            out[a] = turning[:, 0]
        else:
            out[a] = turning @ commodity_shares(rho)
    return out


def total_flows(
    junction: Junction,
    demand: FloatArray,
    supply: FloatArray,
    aggregate: FloatArray,
) -> FloatArray:
    """Total out-flow of each incoming cell of a junction.

    Raises:
        ConfigurationError: If the junction variant is unsupported.

    Returns:
        Array of shape (n_in,).
    """
    return np.array(
        [p.flow for p in flow_partials(junction, demand, supply, aggregate)]
    )


def allocate(
    junction: Junction,
    partial_densities: FloatArray,
    demand: FloatArray,
    supply: FloatArray,
    aggregate: FloatArray,
    turning: FloatArray,
) -> JunctionFlows:
    """Per-commodity flows through a junction.

    Args:
        junction: The junction.
        partial_densities: Partial densities of every cell, shape (N, C + 1).
        demand: Demand of every cell, shape (N,).
        supply: Supply of every cell, shape (N,).
        aggregate: Aggregate split ratios of the junction, (n_in, n_out).
        turning: Per-commodity turning ratios, shape (n_out, C + 1).

    Returns:
        The out-flows of the incoming cells and in-flows of the outgoing cells.
    """
    totals = total_flows(junction, demand, supply, aggregate)
    n_c = partial_densities.shape[1]
    out_flows: dict[int, FloatArray] = {}
    in_flows = {cell: np.zeros(n_c) for cell in junction.outgoing}
    for a, in_cell in enumerate(junction.incoming):
        flow_c = totals[a] * commodity_shares(partial_densities[in_cell])
        out_flows[in_cell] = flow_c
        for b, out_cell in enumerate(junction.outgoing):
            in_flows[out_cell] += turning[b] * flow_c
    return JunctionFlows(out_flows=out_flows, in_flows=in_flows)


# =============================================================================
# Derivative kernels
# =============================================================================


def simple_flow_partials(
    junction: Junction,
    demand: FloatArray,
    supply: FloatArray,
) -> list[FlowPartials]:
    """Partials of the 1x1 flow min(demand_in, supply_out).

    A tie (demand == supply) is attributed to the demand, the side the flow
    value is taken from.
    """
    in_cell, out_cell = junction.incoming[0], junction.outgoing[0]
    d, s = float(demand[in_cell]), float(supply[out_cell])
    result = FlowPartials(in_cell=in_cell, flow=simple_flow(d, s))
    if d <= s:
        result.d_demand[in_cell] = 1.0
    else:
        result.d_supply[out_cell] = 1.0
    return [result]


def merge_flow_partials(
    junction: Junction,
    demand: FloatArray,
    supply: FloatArray,
) -> list[FlowPartials]:
    """Partials of both flows of a 2x1 priority merge.

    Each input independently selects one of three congested branches:
    capped at its own demand, receiving the remainder left by the other
    capped input, or receiving its priority share of the supply.
    """
    in1, in2 = junction.incoming
    out = junction.outgoing[0]
    p1, p2 = junction.priorities
    d1, d2, s = float(demand[in1]), float(demand[in2]), float(supply[out])
    f1, f2 = merge_flows(d1, d2, s, p1, p2)
    first = FlowPartials(in_cell=in1, flow=f1)
    second = FlowPartials(in_cell=in2, flow=f2)

    total = d1 + d2
    if total <= s:
        first.d_demand[in1] = 1.0
        second.d_demand[in2] = 1.0
        return [first, second]

    # Congested: F = s, dF/ds = 1, dF/dd_i = 0.
    for mine, other, p_mine, p_other, part in (
        (in1, in2, p1, p2, first),
        (in2, in1, p2, p1, second),
    ):
        d_mine, d_other = float(demand[mine]), float(demand[other])
        if p_mine * s > d_mine:
            part.d_demand[mine] = 1.0
        elif p_other * s > d_other:
            part.d_demand[other] = -1.0
            part.d_supply[out] = 1.0
        else:
            part.d_supply[out] = p_mine
    return [first, second]


def diverge_flow_partials(
    junction: Junction,
    demand: FloatArray,
    supply: FloatArray,
    aggregate: FloatArray,
) -> list[FlowPartials]:
    """Partials of the 1xN flow min(demand, min_j supply_j / beta_agg_j)."""
    in_cell = junction.incoming[0]
    d = float(demand[in_cell])
    supplies = [float(supply[o]) for o in junction.outgoing]
    betas = [float(b) for b in aggregate[0]]
    flow, pos = diverge_flow(d, supplies, betas)
    result = FlowPartials(in_cell=in_cell, flow=flow)
    if pos is None:
        result.d_demand[in_cell] = 1.0
        return [result]

    bound = supplies[pos] / betas[pos]
    if d <= bound:
        result.d_demand[in_cell] = 1.0
    else:
        out_cell = junction.outgoing[pos]
        result.d_supply[out_cell] = 1.0 / betas[pos]
        result.d_aggregate[(in_cell, out_cell)] = -supplies[pos] / betas[pos] ** 2
    return [result]


def flow_partials(
    junction: Junction,
    demand: FloatArray,
    supply: FloatArray,
    aggregate: FloatArray,
) -> list[FlowPartials]:
    """Dispatch to the derivative kernel of the junction variant.

    Raises:
        ConfigurationError: If the junction variant is unsupported.

    Returns:
        One FlowPartials per incoming cell, in ``junction.incoming`` order.
    """
    match junction.kind:
        case JunctionKind.SIMPLE:
            return simple_flow_partials(junction, demand, supply)
        case JunctionKind.MERGE:
            return merge_flow_partials(junction, demand, supply)
        case JunctionKind.DIVERGE:
            return diverge_flow_partials(junction, demand, supply, aggregate)
    raise_unsupported_junction(
        junction.junction_id, len(junction.incoming), len(junction.outgoing)
    )
    return []
