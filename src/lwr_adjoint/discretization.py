# src/lwr_adjoint/discretization.py
"""Discretize a link/node :class:`~lwr_adjoint.graph.Graph` into cells.

- every link becomes ``ceil(length / (v * dt))`` ROAD cells of length
  ``v * dt``, chained by 1x1 junctions;
- every inner node becomes one junction joining the last cells of its
  incoming links to the first cells of its outgoing links;
- every origin node gets a BUFFER cell feeding its outgoing links;
- every destination node gets a SINK cell fed by its incoming links;
- path p becomes compliant commodity p + 1, owned by the origin it starts
  from, with turning ratio 1 at every diverge it crosses.

The seeded split ratios inject ``1 - alpha`` of each origin's demand as the
non-compliant commodity and spread ``alpha`` evenly over the origin's paths.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Final

from .errors import raise_configuration_error
from .network import JunctionKind, NetworkBuilder
from .split_ratios import SplitRatios

if TYPE_CHECKING:
    from .config import ProblemConfig
    from .graph import Graph
    from .network import Network

_CELL_ROUNDING: Final[int] = 9
_CFL_ERROR: Final[str] = (
    "link {link}: v * dt = {step!r} exceeds the link length {length!r}"
)
_NODE_SHAPE_ERROR: Final[str] = (
    "node {node} has no incoming or no outgoing links and is neither "
    "an origin nor a destination"
)


def cells_per_link(length: float, speed: float, delta_t: float) -> int:
    """Number of cells of length ``speed * delta_t`` covering a link."""
    return max(1, math.ceil(round(length / (speed * delta_t), _CELL_ROUNDING)))


def discretize(graph: Graph, config: ProblemConfig) -> tuple[Network, SplitRatios]:
    """Build the cell network and the seeded split ratios of a graph.

    Args:
        graph: Validated graph.
        config: Problem configuration (delta_t, time_steps and alpha are used).

    Raises:
        ConfigurationError: If the graph cannot be discretized.

    Returns:
        (network, split_ratios).
    """
    dt = config.delta_t
    builder = NetworkBuilder(config.time_steps)

    heads: list[int] = []
    tails: list[int] = []
    for link_id, link in enumerate(graph.links):
        if link.v * dt > link.length:
            raise_configuration_error(
                _CFL_ERROR.format(link=link_id, step=link.v * dt, length=link.length)
            )
        previous: int | None = None
        for _ in range(cells_per_link(link.length, link.v, dt)):
            cell = builder.add_cell(
                length=link.v * dt,
                free_flow_speed=link.v,
                congestion_speed=link.w,
                jam_density=link.jam_density,
                max_flow=link.max_flow,
            )
            if link.initial_density:
                builder.set_initial_density(cell, 0, link.initial_density)
            if previous is None:
                heads.append(cell)
            else:
                builder.add_junction([previous], [cell])
            previous = cell
        tails.append(cell)

    owners: dict[int, list[int]] = {o.node: [] for o in graph.origins}
    for p, path in enumerate(graph.paths):
        owners[graph.links[path.links[0]].from_node].append(p + 1)

    origin_ids: dict[int, int] = {}
    destination_ids: dict[int, int] = {}
    node_junctions: dict[int, int] = {}
    for spec in graph.origins:
        origin_ids[spec.node] = builder.add_origin(
            [heads[i] for i in graph.outgoing_links(spec.node)],
            spec.demand,
            compliant_commodities=owners[spec.node],
            buffer_max_flow=spec.buffer_max_flow,
            buffer_speed=1.0 / dt,
            buffer_length=1.0,
        )
    for spec in graph.destinations:
        destination_ids[spec.node] = builder.add_destination(
            [tails[i] for i in graph.incoming_links(spec.node)],
            priorities=graph.nodes[spec.node].priorities,
        )
    for node_id, node in enumerate(graph.nodes):
        if node_id in origin_ids or node_id in destination_ids:
            continue
        incoming = graph.incoming_links(node_id)
        outgoing = graph.outgoing_links(node_id)
        if not incoming or not outgoing:
            raise_configuration_error(_NODE_SHAPE_ERROR.format(node=node_id))
        node_junctions[node_id] = builder.add_junction(
            [tails[i] for i in incoming],
            [heads[i] for i in outgoing],
            node.priorities,
        )

    network = builder.build()
    for node_id, origin_id in origin_ids.items():
        node_junctions[node_id] = network.origins[origin_id].junction_id
    for node_id, destination_id in destination_ids.items():
        node_junctions[node_id] = network.destinations[destination_id].junction_id

    ratios = SplitRatios.empty(network, config.alpha)
    for node_id, origin_id in origin_ids.items():
        commodities = owners[node_id]
        for commodity in commodities:
            ratios.origin[origin_id, :, commodity] = config.alpha / len(commodities)

    for spec in graph.turning_ratios:
        junction = network.junctions[node_junctions[spec.node]]
        if junction.kind is not JunctionKind.DIVERGE:
            continue
        for link_id, value in spec.ratios.items():
            ratios.set_turning_ratio(junction, heads[link_id], 0, value)

    for p, path in enumerate(graph.paths):
        for link_id in path.links:
            junction = network.junctions[node_junctions[graph.links[link_id].from_node]]
            if junction.kind is JunctionKind.DIVERGE:
                ratios.set_turning_ratio(junction, heads[link_id], p + 1, 1.0)

    ratios.validate(network)
    return network, ratios
