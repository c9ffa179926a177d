# src/lwr_adjoint/graph.py
"""Link/node description of a road network, loadable from JSON or YAML.

A :class:`Graph` is the user-facing input: physical links between numbered
nodes, origins with a demand profile, destinations, the paths followed by
the compliant commodities and the turning ratios of the non-compliant flow.
:func:`lwr_adjoint.discretization.discretize` turns it into a cell network.

Node ids are list positions in ``Graph.nodes``; link ids are list positions
in ``Graph.links``. The incoming (outgoing) links of a node are ordered by
link id, which fixes the order of merge priorities.
"""

from __future__ import annotations

from pathlib import Path as FilePath

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


class Link(BaseModel):
    """A physical road between two nodes (triangular fundamental diagram)."""

    model_config = ConfigDict(extra="forbid")

    from_node: int = Field(ge=0)
    to_node: int = Field(ge=0)
    length: float = Field(gt=0.0)
    v: float = Field(gt=0.0, description="Free-flow speed")
    w: float = Field(gt=0.0, description="Congestion wave speed")
    jam_density: float = Field(gt=0.0)
    max_flow: float = Field(gt=0.0)
    initial_density: float = Field(
        default=0.0,
        ge=0.0,
        description="Non-compliant density in every cell of the link at start",
    )


class Node(BaseModel):
    """A junction between links."""

    model_config = ConfigDict(extra="forbid")

    priorities: list[float] | None = Field(
        default=None,
        description="Merge priorities of the incoming links (by link id)",
    )


class Path(BaseModel):
    """Ordered link ids followed by one compliant commodity."""

    model_config = ConfigDict(extra="forbid")

    links: list[int] = Field(min_length=1)


class OriginSpec(BaseModel):
    """An origin node and the vehicles it releases each time step."""

    model_config = ConfigDict(extra="forbid")

    node: int = Field(ge=0)
    demand: list[float]
    buffer_max_flow: float = Field(default=1e6, gt=0.0)


class DestinationSpec(BaseModel):
    """A destination node."""

    model_config = ConfigDict(extra="forbid")

    node: int = Field(ge=0)


class TurningRatioSpec(BaseModel):
    """Non-compliant turning ratios at a diverging node (link id -> ratio)."""

    model_config = ConfigDict(extra="forbid")

    node: int = Field(ge=0)
    ratios: dict[int, float]


class Graph(BaseModel):
    """Complete network description."""

    model_config = ConfigDict(extra="allow")

    nodes: list[Node]
    links: list[Link]
    paths: list[Path] = Field(default_factory=list)
    origins: list[OriginSpec] = Field(default_factory=list)
    destinations: list[DestinationSpec] = Field(default_factory=list)
    turning_ratios: list[TurningRatioSpec] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: str | FilePath) -> Graph:
        """Load and validate a graph from a JSON or YAML file.

        The format is chosen by suffix: `.yaml` and `.yml` are read as YAML,
        anything else as JSON.

        Returns:
            The validated graph.
        """
        path = FilePath(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in _YAML_SUFFIXES:
            return cls.model_validate(yaml.safe_load(text))
        return cls.model_validate_json(text)

    def incoming_links(self, node: int) -> list[int]:
        """Ids of the links ending at node, in id order."""
        return [i for i, link in enumerate(self.links) if link.to_node == node]

    def outgoing_links(self, node: int) -> list[int]:
        """Ids of the links starting at node, in id order."""
        return [i for i, link in enumerate(self.links) if link.from_node == node]

    @model_validator(mode="after")
    def _validate_topology(self) -> Graph:
        n_nodes = len(self.nodes)
        n_links = len(self.links)
        for i, link in enumerate(self.links):
            if link.from_node >= n_nodes or link.to_node >= n_nodes:
                msg = f"link {i} references a node outside 0..{n_nodes - 1}"
                raise ValueError(msg)

        origin_nodes = {o.node for o in self.origins}
        destination_nodes = {d.node for d in self.destinations}
        for node in origin_nodes | destination_nodes:
            if node >= n_nodes:
                msg = f"origin/destination node {node} outside 0..{n_nodes - 1}"
                raise ValueError(msg)
        if len(origin_nodes) != len(self.origins):
            msg = "a node may host at most one origin"
            raise ValueError(msg)
        for node in origin_nodes:
            if self.incoming_links(node):
                msg = f"origin node {node} must not have incoming links"
                raise ValueError(msg)
        for node in destination_nodes:
            if self.outgoing_links(node):
                msg = f"destination node {node} must not have outgoing links"
                raise ValueError(msg)

        for p, path in enumerate(self.paths):
            for link_id in path.links:
                if not 0 <= link_id < n_links:
                    msg = f"path {p} references unknown link {link_id}"
                    raise ValueError(msg)
            for first, second in zip(path.links, path.links[1:], strict=False):
                if self.links[first].to_node != self.links[second].from_node:
                    msg = f"path {p}: links {first} and {second} are not connected"
                    raise ValueError(msg)
            if self.links[path.links[0]].from_node not in origin_nodes:
                msg = f"path {p} does not start at an origin"
                raise ValueError(msg)
            if self.links[path.links[-1]].to_node not in destination_nodes:
                msg = f"path {p} does not end at a destination"
                raise ValueError(msg)

        for spec in self.turning_ratios:
            outgoing = set(self.outgoing_links(spec.node)) if spec.node < n_nodes else set()
            unknown = set(spec.ratios) - outgoing
            if unknown:
                msg = (
                    f"turning ratios at node {spec.node} reference links "
                    f"{sorted(unknown)} that do not leave it"
                )
                raise ValueError(msg)
        return self
