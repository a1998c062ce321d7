"""Scope nesting analysis for workflows.

The annotator computes, for every node, its scope nesting depth and the
stacks of enclosing loop and try/catch scopes, and records structural scope
errors (unmatched starts or ends, crossing scopes) as data on the node.

Two passes:
- ``run_forward`` walks from the sources, pushing scope starts and popping
  scope ends, merging annotations where paths join.
- ``run_backward`` walks from the sinks, pushing scope ends and popping scope
  starts, and checks that every scope start is closed.

Metanodes forward scopes port by port, so they carry one annotation per
outport; every other node carries exactly one.
"""

from __future__ import annotations

import logging

from nodegraph.core.annotations import GraphAnnotation, ScopeStack
from nodegraph.core.graph_model import GraphLockError, GraphModel
from nodegraph.core.models import NodeID, NodeNotFoundError, ScopeRole
from nodegraph.core.settings import EngineSettings
from nodegraph.core.traversal import TraversalError, kahn_order

logger = logging.getLogger(__name__)

AnnotationKey = tuple[NodeID, int]


class ScopeAnnotator:
    """Computes and holds the ``GraphAnnotation`` of every node of one workflow.

    The caller must hold the workflow lock for both passes; queries are safe
    afterwards as long as no pass is running.
    """

    def __init__(self, graph: GraphModel, settings: EngineSettings | None = None):
        self._graph = graph
        self._settings = settings or EngineSettings()
        self._annotations: dict[AnnotationKey, GraphAnnotation] = {}
        self._by_node: dict[NodeID, list[AnnotationKey]] = {}
        self._forward_complete = False
        self._backward_complete = False

    @property
    def graph(self) -> GraphModel:
        return self._graph

    @property
    def forward_complete(self) -> bool:
        return self._forward_complete

    @property
    def backward_complete(self) -> bool:
        return self._backward_complete

    # ========== Passes ==========

    def run_forward(self) -> None:
        """Compute depth, forward stacks and connected inports.

        Keys are processed in breadth-first topological order, so every
        annotation is complete before it is pushed to its successors.

        Raises:
            GraphLockError: If the workflow lock is not held by this thread.
            TraversalError: If the workflow has a cycle or a finished
                annotation would change.
        """
        self._check_lock("forward")
        self._forward_complete = False
        self._backward_complete = False

        keys = self._current_keys()
        incoming = {key: self._incoming(key) for key in keys}
        outgoing = {key: self._outgoing(key)[0] for key in keys}
        order = kahn_order(keys, {key: preds for key, (preds, _) in incoming.items()})

        annotations: dict[AnnotationKey, GraphAnnotation] = {}
        finished: set[AnnotationKey] = set()
        for key in order:
            _, inports = incoming[key]
            annotation = annotations.get(key)
            if annotation is None:
                annotation = GraphAnnotation.root(key[0], key[1], self._role(key), inports)
                annotations[key] = annotation
            else:
                annotation.connected_container_inports |= inports
            finished.add(key)

            for succ in outgoing[key]:
                arriving = annotation.derive_forward(succ[0], succ[1], self._role(succ))
                existing = annotations.get(succ)
                if existing is None:
                    annotations[succ] = arriving
                elif existing.merge_forward(arriving) and succ in finished:
                    raise TraversalError(
                        f"Annotation of {succ[0]} changed after it was propagated"
                    )

        self._annotations = annotations
        self._by_node = {}
        for key in keys:
            self._by_node.setdefault(key[0], []).append(key)
        self._forward_complete = True

        forward_errors = sum(1 for a in annotations.values() if a.error is not None)
        logger.debug(
            f"Forward scope pass on workflow {self._graph.id}: "
            f"{len(annotations)} annotations, {forward_errors} error(s)"
        )

    def run_backward(self) -> None:
        """Compute backward stacks and connected outports; check scope starts.

        Raises:
            GraphLockError: If the workflow lock is not held by this thread.
            RuntimeError: If no forward pass ran on the current graph.
            TraversalError: If the workflow has a cycle.
        """
        self._check_lock("backward")
        if not self._forward_complete:
            raise RuntimeError("run_forward() must complete before run_backward()")
        keys = self._current_keys()
        if set(keys) != set(self._annotations):
            raise RuntimeError(
                f"Workflow {self._graph.id} changed since the forward pass; run it again"
            )

        outgoing = {key: self._outgoing(key) for key in keys}
        order = kahn_order(keys, {key: succs for key, (succs, _) in outgoing.items()})
        for key in order:
            succs, outports = outgoing[key]
            self._annotations[key].set_and_merge_backwards(
                (self._annotations[s] for s in succs), outports
            )
        self._backward_complete = True

        errors = self.errors()
        if errors:
            logger.warning(
                f"Workflow {self._graph.id} has {len(errors)} scope error(s): "
                + ", ".join(f"{node}: {msg}" for node, msg in sorted(errors.items()))
            )

    def _check_lock(self, pass_name: str) -> None:
        if self._settings.require_lock and not self._graph.holds_lock():
            raise GraphLockError(
                f"The {pass_name} scope pass on workflow {self._graph.id} requires the workflow lock"
            )

    # ========== Key graph ==========

    def _current_keys(self) -> list[AnnotationKey]:
        keys: list[AnnotationKey] = []
        for node in sorted(self._graph.nodes()):
            ports = self._graph.out_port_count(node) if self._graph.is_metanode(node) else 0
            if ports > 0:
                keys.extend((node, port) for port in range(ports))
            else:
                keys.append((node, -1))
        return keys

    def _role(self, key: AnnotationKey) -> ScopeRole:
        if key[1] >= 0:
            return ScopeRole.NONE
        return self._graph.role_of(key[0])

    def _source_key(self, node: NodeID, port: int) -> AnnotationKey:
        return (node, port) if self._graph.is_metanode(node) else (node, -1)

    def _incoming(self, key: AnnotationKey) -> tuple[list[AnnotationKey], set[int]]:
        """Predecessor keys and directly connected container inports."""
        node, outport = key
        conns = self._graph.incoming_connections(node)
        if outport >= 0:
            live = self._graph.connected_in_ports(node, outport)
            conns = {c for c in conns if c.dest_port in live}

        preds: list[AnnotationKey] = []
        inports: set[int] = set()
        for conn in sorted(conns):
            if conn.source == self._graph.id:
                inports.add(conn.source_port)
                continue
            pred = self._source_key(conn.source, conn.source_port)
            if pred not in preds:
                preds.append(pred)
        return preds, inports

    def _outgoing(self, key: AnnotationKey) -> tuple[list[AnnotationKey], set[int]]:
        """Successor keys and directly connected container outports."""
        node, outport = key
        conns = self._graph.outgoing_connections(node)
        if outport >= 0:
            conns = {c for c in conns if c.source_port == outport}

        succs: list[AnnotationKey] = []
        outports: set[int] = set()
        for conn in sorted(conns):
            if conn.dest == self._graph.id:
                outports.add(conn.dest_port)
                continue
            if self._graph.is_metanode(conn.dest) and self._graph.out_port_count(conn.dest) > 0:
                targets = [
                    (conn.dest, port)
                    for port in sorted(self._graph.connected_out_ports(conn.dest, conn.dest_port))
                ]
            else:
                targets = [(conn.dest, -1)]
            for succ in targets:
                if succ not in succs:
                    succs.append(succ)
        return succs, outports

    # ========== Queries ==========

    def _lookup(self, node_id: NodeID) -> list[GraphAnnotation]:
        keys = self._by_node.get(node_id)
        if not keys:
            raise NodeNotFoundError(
                f"Node {node_id} has no scope annotation in workflow {self._graph.id}"
            )
        return [self._annotations[key] for key in keys]

    def _select(self, node_id: NodeID, outport: int | None) -> GraphAnnotation:
        annotations = self._lookup(node_id)
        if outport is None:
            return annotations[0]
        for annotation in annotations:
            if annotation.outport_index == outport:
                return annotation
        raise NodeNotFoundError(f"Node {node_id} has no annotation for outport {outport}")

    def annotation_of(self, node_id: NodeID) -> tuple[GraphAnnotation, ...]:
        """Snapshots of the node's annotations (one per metanode outport)."""
        return tuple(a.snapshot() for a in self._lookup(node_id))

    def depth(self, node_id: NodeID) -> int:
        return max(a.depth for a in self._lookup(node_id))

    def role(self, node_id: NodeID) -> ScopeRole:
        return self._lookup(node_id)[0].role

    def forward_stack(self, node_id: NodeID, outport: int | None = None) -> ScopeStack:
        return self._select(node_id, outport).forward_stack

    def backward_stack(self, node_id: NodeID, outport: int | None = None) -> ScopeStack:
        return self._select(node_id, outport).backward_stack

    def error(self, node_id: NodeID) -> str | None:
        for annotation in self._lookup(node_id):
            if annotation.error is not None:
                return annotation.error
        return None

    def errors(self) -> dict[NodeID, str]:
        """All nodes with a structural scope error."""
        result: dict[NodeID, str] = {}
        for node_id in self._by_node:
            message = self.error(node_id)
            if message is not None:
                result[node_id] = message
        return result

    def annotations_by_depth(self) -> list[GraphAnnotation]:
        """Snapshots of all annotations ordered by depth, then id and outport."""
        return [
            a.snapshot()
            for a in sorted(self._annotations.values(), key=lambda a: (a.depth, a.id, a.outport_index))
        ]

    def scope_members(self, start_id: NodeID) -> list[NodeID]:
        """Nodes enclosed by the scope opened at ``start_id``."""
        self._lookup(start_id)
        return sorted(
            node_id
            for node_id, keys in self._by_node.items()
            if any(start_id in self._annotations[key].forward_stack for key in keys)
        )
