"""Workflow definition schema using Pydantic models.

A workflow document lists nodes and port-to-port connections. Metanodes and
components carry a nested workflow whose boundary ports are referenced with
the literals ``"inport"`` (as a connection source) and ``"outport"`` (as a
connection destination).

Structure is checked in two steps: Pydantic validates each record, then
``WorkflowDefinition.validate_graph()`` checks the graph as a whole using
NetworkX (ids, port ranges, occupied inports, cycles).
"""

from pathlib import Path
from typing import Literal

import networkx as nx
import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from nodegraph.core.models import NodeKind, NodeState, ScopeRole


class WorkflowDefinitionError(Exception):
    """Workflow document cannot be loaded or is structurally invalid."""

    pass


class NodeDefinition(BaseModel):
    """A node in a workflow document."""

    id: int = Field(ge=0)  # Index inside the holding workflow
    name: str | None = None
    type: str = "node"  # Node type; mapped to a scope role via settings
    kind: NodeKind = NodeKind.NATIVE
    state: NodeState = NodeState.IDLE  # Ignored for containers (derived from content)
    role: ScopeRole | None = None  # Explicit role, overrides the type mapping
    inports: int = Field(default=1, ge=0)
    outports: int = Field(default=1, ge=0)
    workflow: "WorkflowDefinition | None" = None  # Content of metanodes/components

    @model_validator(mode="after")
    def validate_kind(self) -> "NodeDefinition":
        """Only containers carry a workflow, and metanodes must carry one."""
        if self.kind is NodeKind.NATIVE and self.workflow is not None:
            raise ValueError(f"Native node {self.id} cannot contain a workflow")
        if self.kind is NodeKind.METANODE and self.workflow is None:
            raise ValueError(f"Metanode {self.id} requires a 'workflow'")
        if self.kind is not NodeKind.NATIVE and self.role not in (None, ScopeRole.NONE):
            raise ValueError(f"Container node {self.id} cannot have scope role '{self.role.value}'")
        return self

    @property
    def label(self) -> str:
        return self.name or f"{self.type} #{self.id}"


class ConnectionDefinition(BaseModel):
    """Directed port-to-port connection."""

    source: int | Literal["inport"]  # "inport": a port of the enclosing container
    source_port: int = Field(default=0, ge=0)
    dest: int | Literal["outport"]  # "outport": a port of the enclosing container
    dest_port: int = Field(default=0, ge=0)


class WorkflowDefinition(BaseModel):
    """Complete workflow document (or the content of a container node)."""

    name: str = "workflow"
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[NodeDefinition] = Field(default_factory=list)
    connections: list[ConnectionDefinition] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "WorkflowDefinition":
        """Load a workflow document from a YAML file.

        Raises:
            WorkflowDefinitionError: If the file cannot be read or parsed.
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise WorkflowDefinitionError(f"Cannot read workflow file '{path}': {e}") from e
        except yaml.YAMLError as e:
            raise WorkflowDefinitionError(f"Invalid YAML in '{path}': {e}") from e

        if not isinstance(data, dict):
            raise WorkflowDefinitionError(f"Workflow file '{path}' must contain a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise WorkflowDefinitionError(f"Invalid workflow definition in '{path}': {e}") from e

    def validate_graph(self, boundary: tuple[int, int] | None = None) -> list[str]:
        """
        Validate graph structure using NetworkX.

        Args:
            boundary: ``(inports, outports)`` of the enclosing container, or
                None for a top-level workflow (which has no boundary ports).

        Returns:
            List of validation errors, nested workflows included.
        """
        errors: list[str] = []

        nodes: dict[int, NodeDefinition] = {}
        for node in self.nodes:
            if node.id in nodes:
                errors.append(f"Duplicate node ID: {node.id}")
            nodes[node.id] = node

        occupied_inports: set[tuple[int | str, int]] = set()
        for conn in self.connections:
            label = f"Connection {conn.source}[{conn.source_port}] -> {conn.dest}[{conn.dest_port}]"

            if conn.source == "inport":
                if boundary is None:
                    errors.append(f"{label}: top-level workflow has no inports")
                elif conn.source_port >= boundary[0]:
                    errors.append(f"{label}: container has only {boundary[0]} inport(s)")
            elif conn.source not in nodes:
                errors.append(f"{label}: source {conn.source} not found")
            elif conn.source_port >= nodes[conn.source].outports:
                errors.append(
                    f"{label}: node {conn.source} has only {nodes[conn.source].outports} outport(s)"
                )

            if conn.dest == "outport":
                if boundary is None:
                    errors.append(f"{label}: top-level workflow has no outports")
                elif conn.dest_port >= boundary[1]:
                    errors.append(f"{label}: container has only {boundary[1]} outport(s)")
            elif conn.dest not in nodes:
                errors.append(f"{label}: destination {conn.dest} not found")
            elif conn.dest_port >= nodes[conn.dest].inports:
                errors.append(
                    f"{label}: node {conn.dest} has only {nodes[conn.dest].inports} inport(s)"
                )

            target = (conn.dest, conn.dest_port)
            if target in occupied_inports:
                errors.append(f"{label}: port {conn.dest_port} of {conn.dest} is already connected")
            occupied_inports.add(target)

        G = self._to_networkx()
        try:
            cycle = nx.find_cycle(G)
            errors.append(f"Cycle detected: {' -> '.join(str(edge[0]) for edge in cycle)}")
        except nx.NetworkXNoCycle:
            pass  # No cycles - OK

        for node in self.nodes:
            if node.workflow is not None:
                nested = node.workflow.validate_graph(boundary=(node.inports, node.outports))
                errors.extend(f"In {node.kind.value} {node.id}: {error}" for error in nested)

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph of node-to-node connections"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for conn in self.connections:
            if isinstance(conn.source, int) and isinstance(conn.dest, int):
                G.add_edge(conn.source, conn.dest)
        return G


NodeDefinition.model_rebuild()
