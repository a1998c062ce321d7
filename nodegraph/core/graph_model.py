"""Graph model consumed by the analysis engine.

``GraphModel`` is the read-only protocol the dependency tracker and the scope
annotator work against. ``Workflow`` is the in-memory implementation: nodes
and port-to-port connections stored in a NetworkX ``MultiDiGraph`` in which
the workflow's own id stands for its container boundary.

Nested workflows (the content of metanodes and components) share the lock of
their root workflow. Boundary queries look exactly one level up: the parent's
connections touching the container and, if available, a read-only view of the
parent's dependent properties.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import networkx as nx

from nodegraph.core.models import (
    Connection,
    ConnectionKind,
    ContainerKind,
    NodeID,
    NodeKind,
    NodeNotFoundError,
    NodeState,
    ScopeRole,
)
from nodegraph.core.traversal import connected_in_ports, connected_out_ports

if TYPE_CHECKING:
    from nodegraph.core.graph_schema import WorkflowDefinition

logger = logging.getLogger(__name__)


class GraphLockError(Exception):
    """A pass was started without holding the workflow lock."""

    pass


class InvalidConnectionError(Exception):
    """Connection cannot be added to the workflow."""

    pass


class DependentPropertiesView(Protocol):
    """Read-only access to the dependent properties of a parent workflow."""

    def has_executable_predecessor(self, node_id: NodeID) -> bool: ...

    def has_executing_successor(self, node_id: NodeID) -> bool: ...

    def boundary_inport_executable(self, port: int) -> bool: ...

    def boundary_outport_executing(self, port: int) -> bool: ...


@runtime_checkable
class GraphModel(Protocol):
    """What the analysis engine needs to know about a workflow.

    ``incoming_connections``/``outgoing_connections`` also accept the
    workflow's own ``id`` and then return the connections attached to the
    container outports/inports respectively.
    """

    @property
    def id(self) -> NodeID: ...

    def nodes(self) -> set[NodeID]: ...

    def state(self, node_id: NodeID) -> NodeState: ...

    def role_of(self, node_id: NodeID) -> ScopeRole: ...

    def successors(self, node_id: NodeID) -> set[NodeID]: ...

    def predecessors(self, node_id: NodeID) -> set[NodeID]: ...

    def incoming_connections(self, node_id: NodeID) -> set[Connection]: ...

    def outgoing_connections(self, node_id: NodeID) -> set[Connection]: ...

    def is_metanode(self, node_id: NodeID) -> bool: ...

    def out_port_count(self, node_id: NodeID) -> int: ...

    def connected_out_ports(self, node_id: NodeID, inport: int) -> set[int]: ...

    def connected_in_ports(self, node_id: NodeID, outport: int) -> set[int]: ...

    def is_container_boundary(self) -> bool: ...

    def is_project_root(self) -> bool: ...

    def is_component(self) -> bool: ...

    def predecessor_across_boundary(self, inport: int) -> bool: ...

    def successor_across_boundary(self, outport: int) -> bool: ...

    def holds_lock(self) -> bool: ...


class WorkflowLock:
    """Exclusive, re-entrant workflow lock that knows its owner thread."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._owner: int | None = None
        self._count = 0

    def acquire(self, timeout: float = -1) -> bool:
        if not self._lock.acquire(timeout=timeout):
            return False
        self._owner = threading.get_ident()
        self._count += 1
        return True

    def release(self) -> None:
        if not self.is_held_by_current_thread():
            raise GraphLockError("Workflow lock released by a thread that does not hold it")
        self._count -= 1
        if self._count == 0:
            self._owner = None
        self._lock.release()

    def is_held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def __enter__(self) -> WorkflowLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@dataclass
class NodeContainer:
    """A node as stored in a ``Workflow``."""

    id: NodeID
    name: str
    kind: NodeKind = NodeKind.NATIVE
    node_type: str = "node"
    state: NodeState = NodeState.IDLE  # Own state of native nodes only
    role: ScopeRole = ScopeRole.NONE
    in_ports: int = 1
    out_ports: int = 1
    workflow: Workflow | None = None  # Content of metanodes and components

    @property
    def is_container(self) -> bool:
        return self.workflow is not None


class Workflow:
    """In-memory workflow implementing ``GraphModel``.

    Example:
        wf = Workflow()
        reader = wf.add_node("Reader", state=NodeState.CONFIGURED, in_ports=0)
        loop = wf.add_node("Loop Start", role=ScopeRole.SCOPE_START)
        wf.connect(reader, 0, loop, 0)
    """

    def __init__(
        self,
        workflow_id: NodeID | None = None,
        name: str = "workflow",
        kind: ContainerKind = ContainerKind.PROJECT,
        parent: Workflow | None = None,
        in_ports: int = 0,
        out_ports: int = 0,
    ):
        self._id = workflow_id or NodeID.root()
        self.name = name
        self.kind = kind
        self.parent = parent
        self.in_ports = in_ports
        self.out_ports = out_ports
        # Nested workflows are guarded by the root's lock
        self._lock = parent._lock if parent is not None else WorkflowLock()
        self._nodes: dict[NodeID, NodeContainer] = {}
        # Multi-edges keyed by (source_port, dest_port); self._id is the boundary
        self._graph = nx.MultiDiGraph()
        self._graph.add_node(self._id)
        self._next_index = 0
        # Set by the owner of the parent's tracker; consulted for boundary queries
        self.parent_view: DependentPropertiesView | None = None

    # ========== Construction ==========

    @classmethod
    def from_definition(
        cls,
        definition: WorkflowDefinition,
        scope_roles: Mapping[str, ScopeRole] | None = None,
    ) -> Workflow:
        """Build a workflow tree from a validated definition.

        Args:
            definition: Workflow document.
            scope_roles: Maps node types to scope roles for nodes without an
                explicit role.

        Raises:
            WorkflowDefinitionError: If the definition fails graph validation.
        """
        from nodegraph.core.graph_schema import WorkflowDefinitionError

        errors = definition.validate_graph()
        if errors:
            raise WorkflowDefinitionError(
                f"Workflow '{definition.name}' is invalid: " + "; ".join(errors)
            )
        roles = scope_roles or {}

        root = cls(name=definition.name)
        pending: list[tuple[WorkflowDefinition, Workflow]] = [(definition, root)]
        while pending:
            wf_def, workflow = pending.pop()
            for node_def in wf_def.nodes:
                if node_def.kind is NodeKind.NATIVE:
                    role = node_def.role or roles.get(node_def.type, ScopeRole.NONE)
                    workflow.add_node(
                        node_def.label,
                        state=node_def.state,
                        role=role,
                        node_type=node_def.type,
                        in_ports=node_def.inports,
                        out_ports=node_def.outports,
                        index=node_def.id,
                    )
                else:
                    inner = workflow._add_container(
                        node_def.label,
                        node_def.kind,
                        in_ports=node_def.inports,
                        out_ports=node_def.outports,
                        index=node_def.id,
                        node_type=node_def.type,
                    )
                    if node_def.workflow is not None:
                        pending.append((node_def.workflow, inner))
            for conn_def in wf_def.connections:
                source = (
                    workflow.id
                    if conn_def.source == "inport"
                    else workflow.id.child(conn_def.source)
                )
                dest = workflow.id if conn_def.dest == "outport" else workflow.id.child(conn_def.dest)
                workflow.connect(source, conn_def.source_port, dest, conn_def.dest_port)
        return root

    def add_node(
        self,
        name: str,
        state: NodeState = NodeState.IDLE,
        role: ScopeRole = ScopeRole.NONE,
        node_type: str = "node",
        in_ports: int = 1,
        out_ports: int = 1,
        index: int | None = None,
    ) -> NodeID:
        """Add a native node and return its id."""
        node_id = self._allocate_id(index)
        self._nodes[node_id] = NodeContainer(
            id=node_id,
            name=name,
            node_type=node_type,
            state=state,
            role=role,
            in_ports=in_ports,
            out_ports=out_ports,
        )
        self._graph.add_node(node_id)
        return node_id

    def add_metanode(
        self, name: str, in_ports: int = 1, out_ports: int = 1, index: int | None = None
    ) -> Workflow:
        """Add a metanode and return its (empty) content workflow."""
        return self._add_container(name, NodeKind.METANODE, in_ports, out_ports, index)

    def add_component(
        self, name: str, in_ports: int = 1, out_ports: int = 1, index: int | None = None
    ) -> Workflow:
        """Add a component and return its (empty) content workflow."""
        return self._add_container(name, NodeKind.COMPONENT, in_ports, out_ports, index)

    def _add_container(
        self,
        name: str,
        kind: NodeKind,
        in_ports: int,
        out_ports: int,
        index: int | None,
        node_type: str | None = None,
    ) -> Workflow:
        node_id = self._allocate_id(index)
        inner = Workflow(
            workflow_id=node_id,
            name=name,
            kind=ContainerKind.METANODE if kind is NodeKind.METANODE else ContainerKind.COMPONENT,
            parent=self,
            in_ports=in_ports,
            out_ports=out_ports,
        )
        self._nodes[node_id] = NodeContainer(
            id=node_id,
            name=name,
            kind=kind,
            node_type=node_type or kind.value,
            in_ports=in_ports,
            out_ports=out_ports,
            workflow=inner,
        )
        self._graph.add_node(node_id)
        return inner

    def _allocate_id(self, index: int | None) -> NodeID:
        if index is None:
            index = self._next_index
        node_id = self._id.child(index)
        if node_id in self._nodes:
            raise ValueError(f"Node {node_id} already exists in workflow '{self.name}'")
        self._next_index = max(self._next_index, index + 1)
        return node_id

    def remove_node(self, node_id: NodeID) -> None:
        """Remove a node together with all of its connections."""
        self.get_node(node_id)
        self._graph.remove_node(node_id)
        del self._nodes[node_id]

    def connect(self, source: NodeID, source_port: int, dest: NodeID, dest_port: int) -> Connection:
        """Connect ``source[source_port]`` to ``dest[dest_port]``.

        Use the workflow's own id as source for a container inport and as
        destination for a container outport.

        Raises:
            NodeNotFoundError: If an endpoint is unknown.
            InvalidConnectionError: If a port is out of range or occupied, the
                workflow has no boundary, or the connection closes a cycle.
        """
        from_boundary = source == self._id
        to_boundary = dest == self._id
        if (from_boundary or to_boundary) and self.kind is ContainerKind.PROJECT:
            raise InvalidConnectionError(f"Workflow '{self.name}' has no container ports")

        source_ports = self.in_ports if from_boundary else self.get_node(source).out_ports
        if not 0 <= source_port < source_ports:
            raise InvalidConnectionError(f"Source port {source_port} of {source} does not exist")
        dest_ports = self.out_ports if to_boundary else self.get_node(dest).in_ports
        if not 0 <= dest_port < dest_ports:
            raise InvalidConnectionError(f"Destination port {dest_port} of {dest} does not exist")

        for _, _, data in self._graph.in_edges(dest, data=True):
            if data["connection"].dest_port == dest_port:
                raise InvalidConnectionError(f"Port {dest_port} of {dest} is already connected")

        if not from_boundary and not to_boundary:
            nodes_only = nx.subgraph_view(self._graph, filter_node=lambda n: n != self._id)
            if source == dest or nx.has_path(nodes_only, dest, source):
                raise InvalidConnectionError(f"Connecting {source} to {dest} would create a cycle")

        if from_boundary and to_boundary:
            kind = ConnectionKind.WFM_THROUGH
        elif from_boundary:
            kind = ConnectionKind.WFM_IN
        elif to_boundary:
            kind = ConnectionKind.WFM_OUT
        else:
            kind = ConnectionKind.STD
        conn = Connection(source, source_port, dest, dest_port, kind)
        self._graph.add_edge(source, dest, key=(source_port, dest_port), connection=conn)
        logger.debug(f"Connected {source}[{source_port}] -> {dest}[{dest_port}] ({kind.value})")
        return conn

    def disconnect(self, conn: Connection) -> None:
        key = (conn.source_port, conn.dest_port)
        if not self._graph.has_edge(conn.source, conn.dest, key=key):
            raise InvalidConnectionError(f"No such connection: {conn}")
        self._graph.remove_edge(conn.source, conn.dest, key=key)

    def set_state(self, node_id: NodeID, state: NodeState) -> None:
        """Set the state of a native node (container states are derived)."""
        node = self.get_node(node_id)
        if node.is_container:
            raise ValueError(f"State of container node {node_id} is derived from its content")
        node.state = state

    # ========== Lookup ==========

    @property
    def id(self) -> NodeID:
        return self._id

    def lock(self) -> WorkflowLock:
        return self._lock

    def holds_lock(self) -> bool:
        return self._lock.is_held_by_current_thread()

    def get_node(self, node_id: NodeID) -> NodeContainer:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(f"Node {node_id} not found in workflow '{self.name}'") from None

    def _check_endpoint(self, node_id: NodeID) -> None:
        if node_id != self._id and node_id not in self._nodes:
            raise NodeNotFoundError(f"Node {node_id} not found in workflow '{self.name}'")

    def nodes(self) -> set[NodeID]:
        return set(self._nodes)

    def containers(self) -> list[NodeContainer]:
        return [self._nodes[n] for n in sorted(self._nodes) if self._nodes[n].is_container]

    def state(self, node_id: NodeID) -> NodeState:
        node = self.get_node(node_id)
        if node.workflow is None:
            return node.state
        return node.workflow.aggregate_state()

    def aggregate_state(self) -> NodeState:
        """State of a container derived from all native nodes inside it."""
        states: list[NodeState] = []
        pending = [self]
        while pending:
            workflow = pending.pop()
            for node in workflow._nodes.values():
                if node.workflow is not None:
                    pending.append(node.workflow)
                else:
                    states.append(node.state)
        if any(s.is_in_progress for s in states):
            return NodeState.EXECUTING
        if any(s.is_executable for s in states):
            return NodeState.CONFIGURED
        if states and all(s.is_executed for s in states):
            return NodeState.EXECUTED
        return NodeState.IDLE

    def role_of(self, node_id: NodeID) -> ScopeRole:
        return self.get_node(node_id).role

    def successors(self, node_id: NodeID) -> set[NodeID]:
        self._check_endpoint(node_id)
        return {n for n in self._graph.successors(node_id) if n != self._id}

    def predecessors(self, node_id: NodeID) -> set[NodeID]:
        self._check_endpoint(node_id)
        return {n for n in self._graph.predecessors(node_id) if n != self._id}

    def incoming_connections(self, node_id: NodeID) -> set[Connection]:
        self._check_endpoint(node_id)
        return {data["connection"] for _, _, data in self._graph.in_edges(node_id, data=True)}

    def outgoing_connections(self, node_id: NodeID) -> set[Connection]:
        self._check_endpoint(node_id)
        return {data["connection"] for _, _, data in self._graph.out_edges(node_id, data=True)}

    def is_metanode(self, node_id: NodeID) -> bool:
        return self.get_node(node_id).kind is NodeKind.METANODE

    def out_port_count(self, node_id: NodeID) -> int:
        return self.get_node(node_id).out_ports

    def connected_out_ports(self, node_id: NodeID, inport: int) -> set[int]:
        """Outports of a metanode wired (inside it) to the given inport."""
        inner = self._content(node_id)
        return connected_out_ports(inner, inport)

    def connected_in_ports(self, node_id: NodeID, outport: int) -> set[int]:
        """Inports of a metanode wired (inside it) to the given outport."""
        inner = self._content(node_id)
        return connected_in_ports(inner, outport)

    def _content(self, node_id: NodeID) -> Workflow:
        node = self.get_node(node_id)
        if node.workflow is None:
            raise ValueError(f"Node {node_id} is not a container")
        return node.workflow

    # ========== Container boundary ==========

    def is_container_boundary(self) -> bool:
        return self.kind is not ContainerKind.PROJECT

    def is_project_root(self) -> bool:
        return self.parent is None

    def is_component(self) -> bool:
        return self.kind is ContainerKind.COMPONENT

    def predecessor_across_boundary(self, inport: int) -> bool:
        """Whether the outside of the given container inport is executable.

        Components answer for the component as a whole; metanodes look at the
        parent connection feeding this inport.
        """
        parent = self.parent
        if parent is None:
            return False
        view = self.parent_view
        if self.is_component():
            if view is not None and view.has_executable_predecessor(self._id):
                return True
            feeding = parent.incoming_connections(self._id)
        else:
            feeding = {c for c in parent.incoming_connections(self._id) if c.dest_port == inport}

        for conn in feeding:
            if conn.source == parent.id:
                # Fed straight from the parent's own inport: ask for that port only
                if view is not None and view.boundary_inport_executable(conn.source_port):
                    return True
                continue
            if parent.state(conn.source).is_executable:
                return True
            if view is not None and view.has_executable_predecessor(conn.source):
                return True
        return False

    def successor_across_boundary(self, outport: int) -> bool:
        """Whether something consuming the given container outport is in progress."""
        parent = self.parent
        if parent is None:
            return False
        view = self.parent_view
        if self.is_component():
            if view is not None and view.has_executing_successor(self._id):
                return True
            consuming = parent.outgoing_connections(self._id)
        else:
            consuming = {
                c for c in parent.outgoing_connections(self._id) if c.source_port == outport
            }

        for conn in consuming:
            if conn.dest == parent.id:
                if view is not None and view.boundary_outport_executing(conn.dest_port):
                    return True
                continue
            if parent.state(conn.dest).is_in_progress:
                return True
            if view is not None and view.has_executing_successor(conn.dest):
                return True
        return False

    def __repr__(self) -> str:
        return f"Workflow(id={self._id}, name={self.name!r}, kind={self.kind.value})"
