"""Dependent node properties for execute/reset gating.

For every node the tracker knows whether some upstream node is executable and
whether some downstream node is executing. Both answers come from one
O(V+E) update instead of a graph walk per query.
"""

from __future__ import annotations

import logging

from nodegraph.core.graph_model import GraphLockError, GraphModel
from nodegraph.core.models import DependentProperties, NodeID, NodeNotFoundError
from nodegraph.core.settings import EngineSettings
from nodegraph.core.traversal import breadth_first

logger = logging.getLogger(__name__)


class DependencyTracker:
    """Keeps ``DependentProperties`` for all nodes of one workflow.

    ALGORITHM (``update``):
    1. Seed forward with executable nodes and backward with in-progress nodes.
       Nodes wired to a container port whose outside qualifies are marked
       directly and seeded as well.
    2. Drop entries of nodes that left the workflow.
    3. Forward BFS along successors raising ``has_executable_predecessor``.
    4. Backward BFS along predecessors raising ``has_executing_successor``.

    A node is queued only when its flag flips to True. Flags never flip back
    within a pass, so each node is expanded at most once per direction (plus
    once as a seed).

    The caller must hold the workflow lock for ``update``; the tracker itself
    does no locking.
    """

    def __init__(self, graph: GraphModel, settings: EngineSettings | None = None):
        self._graph = graph
        self._settings = settings or EngineSettings()
        self._properties: dict[NodeID, DependentProperties] = {}
        # Answers for this workflow's own container ports, filled per update
        self._inport_executable: dict[int, bool] = {}
        self._outport_executing: dict[int, bool] = {}
        self._updated = False

    @property
    def graph(self) -> GraphModel:
        return self._graph

    def update(self) -> None:
        """Recompute the dependent properties of every node.

        Raises:
            GraphLockError: If the workflow lock is not held by this thread.
            TraversalError: If a propagation visits more nodes than possible.
        """
        if self._settings.require_lock and not self._graph.holds_lock():
            raise GraphLockError(
                f"Dependency update of workflow {self._graph.id} requires the workflow lock"
            )

        nodes = self._graph.nodes()
        stale = set(self._properties) - nodes
        if stale:
            logger.debug(f"Pruning {len(stale)} removed node(s) from workflow {self._graph.id}")

        # Fresh records every pass: nothing survives from the previous one
        self._properties = {}
        self._inport_executable = {}
        self._outport_executing = {}
        for node in nodes:
            self._props_for(node)

        forward_seed, backward_seed = self._seed(nodes)

        budget = len(nodes) + len(forward_seed)
        expanded_fw = breadth_first(
            forward_seed,
            self._graph.successors,
            lambda n: self._props_for(n).mark_executable_predecessor(),
            budget=budget,
        )
        budget = len(nodes) + len(backward_seed)
        expanded_bw = breadth_first(
            backward_seed,
            self._graph.predecessors,
            lambda n: self._props_for(n).mark_executing_successor(),
            budget=budget,
        )
        self._updated = True
        logger.debug(
            f"Updated dependent properties of workflow {self._graph.id}: "
            f"{len(nodes)} nodes, {expanded_fw} forward / {expanded_bw} backward expansions"
        )

    def _seed(self, nodes: set[NodeID]) -> tuple[list[NodeID], list[NodeID]]:
        """Collect the nodes both searches start from."""
        forward_seed: list[NodeID] = []
        backward_seed: list[NodeID] = []
        crosses_boundary = self._graph.is_container_boundary() and not self._graph.is_project_root()

        for node in sorted(nodes):
            state = self._graph.state(node)
            forward = state.is_executable
            backward = state.is_in_progress

            if crosses_boundary:
                props = self._props_for(node)
                for conn in self._graph.incoming_connections(node):
                    if conn.source == self._graph.id and self.boundary_inport_executable(
                        conn.source_port
                    ):
                        props.mark_executable_predecessor()
                        forward = True
                for conn in self._graph.outgoing_connections(node):
                    if conn.dest == self._graph.id and self.boundary_outport_executing(
                        conn.dest_port
                    ):
                        props.mark_executing_successor()
                        backward = True

            if forward:
                forward_seed.append(node)
            if backward:
                backward_seed.append(node)
        return forward_seed, backward_seed

    def _props_for(self, node_id: NodeID) -> DependentProperties:
        props = self._properties.get(node_id)
        if props is None:
            props = DependentProperties()
            self._properties[node_id] = props
        return props

    def _lookup(self, node_id: NodeID) -> DependentProperties:
        try:
            return self._properties[node_id]
        except KeyError:
            hint = "" if self._updated else " (update() has not run yet)"
            raise NodeNotFoundError(
                f"Node {node_id} is unknown to the dependency tracker of "
                f"workflow {self._graph.id}{hint}"
            ) from None

    # ========== Queries ==========

    def has_executable_predecessor(self, node_id: NodeID) -> bool:
        return self._lookup(node_id).has_executable_predecessor

    def has_executing_successor(self, node_id: NodeID) -> bool:
        return self._lookup(node_id).has_executing_successor

    def boundary_inport_executable(self, port: int) -> bool:
        """Whether the outside of this workflow's container inport is executable.

        Answered once per update and kept, so nested workflows can ask about
        a single port without looking further up than this workflow.
        """
        answer = self._inport_executable.get(port)
        if answer is None:
            answer = self._graph.predecessor_across_boundary(port)
            self._inport_executable[port] = answer
        return answer

    def boundary_outport_executing(self, port: int) -> bool:
        """Whether something consuming this workflow's container outport is in progress."""
        answer = self._outport_executing.get(port)
        if answer is None:
            answer = self._graph.successor_across_boundary(port)
            self._outport_executing[port] = answer
        return answer

    def properties_of(self, node_id: NodeID) -> DependentProperties:
        """Copy of the node's properties from the last update."""
        return self._lookup(node_id).copy()

    def snapshot(self) -> dict[NodeID, DependentProperties]:
        return {node: props.copy() for node, props in self._properties.items()}

    def can_execute(self, node_id: NodeID) -> bool:
        """Whether executing the node (and whatever it needs upstream) is possible.

        Executed and in-progress nodes cannot be executed; configured ones can;
        any other node can if something upstream is executable.

        Raises:
            NodeNotFoundError: If the node was not part of the last update.
        """
        props = self._lookup(node_id)
        state = self._graph.state(node_id)
        if state.is_executed or state.is_in_progress:
            return False
        return state.is_executable or props.has_executable_predecessor

    def can_reset(self, node_id: NodeID) -> bool:
        """Whether the node can be reset without disturbing running work.

        Raises:
            NodeNotFoundError: If the node was not part of the last update.
        """
        props = self._lookup(node_id)
        state = self._graph.state(node_id)
        if state.is_in_progress or props.has_executing_successor:
            return False
        return state.is_resettable
