"""Graph traversal helpers shared by the tracker and the annotator.

All helpers work on the ``GraphModel`` protocol and never follow connections
out of the workflow they are given; container ports are resolved one workflow
at a time.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import TYPE_CHECKING, TypeVar

import networkx as nx

from nodegraph.core.models import NodeID

if TYPE_CHECKING:
    from nodegraph.core.graph_model import GraphModel

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class TraversalError(Exception):
    """A traversal broke one of its termination invariants."""

    pass


def breadth_first(
    seeds: Iterable[K],
    neighbours: Callable[[K], Iterable[K]],
    visit: Callable[[K], bool],
    budget: int | None = None,
) -> int:
    """Breadth-first expansion with a once-only guard.

    ``visit`` is called for every neighbour reached and must return True only
    the first time it reaches a node; only then is the node queued. Seeds are
    expanded without being visited.

    Args:
        seeds: Nodes to expand first.
        neighbours: Returns the nodes adjacent to a node.
        visit: Marks a reached node, returns True if it was newly marked.
        budget: Maximum number of expansions before failing.

    Returns:
        Number of expanded nodes.

    Raises:
        TraversalError: If the expansion budget is exceeded.
    """
    queue = deque(seeds)
    expanded = 0
    while queue:
        node = queue.popleft()
        expanded += 1
        if budget is not None and expanded > budget:
            raise TraversalError(
                f"Traversal exceeded its budget of {budget} expansions at {node}; "
                "a node was queued more than once."
            )
        for succ in sorted(neighbours(node)):
            if visit(succ):
                queue.append(succ)
    return expanded


def kahn_order(keys: Iterable[K], predecessors: Mapping[K, Iterable[K]]) -> list[K]:
    """Breadth-first topological order of ``keys``.

    A key is emitted only after all of its predecessors. Ties keep the order
    of ``keys``.

    Raises:
        TraversalError: If the keys contain a cycle.
    """
    ordered_keys = list(keys)
    in_degree: dict[K, int] = {key: 0 for key in ordered_keys}
    successors: dict[K, list[K]] = {key: [] for key in ordered_keys}
    for key in ordered_keys:
        for pred in predecessors.get(key, ()):
            if pred not in in_degree:
                raise TraversalError(f"Predecessor {pred} of {key} is not a known key")
            in_degree[key] += 1
            successors[pred].append(key)

    queue = deque(key for key in ordered_keys if in_degree[key] == 0)
    order: list[K] = []
    while queue:
        key = queue.popleft()
        order.append(key)
        for succ in successors[key]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)

    if len(order) != len(ordered_keys):
        cycle_members = sorted(str(key) for key, deg in in_degree.items() if deg > 0)
        logger.error(f"Topological ordering stopped after {len(order)}/{len(ordered_keys)} keys")
        raise TraversalError(f"Cycle detected among: {cycle_members}")
    return order


def source_nodes(graph: GraphModel) -> list[NodeID]:
    """Nodes without predecessors inside the workflow."""
    return sorted(n for n in graph.nodes() if not graph.predecessors(n))


def sink_nodes(graph: GraphModel) -> list[NodeID]:
    """Nodes without successors inside the workflow."""
    return sorted(n for n in graph.nodes() if not graph.successors(n))


def connected_out_ports(graph: GraphModel, inport: int) -> set[int]:
    """Container outports reachable from the given container inport.

    Metanodes on the way only forward the outports wired to the inport the
    path enters through.
    """
    result: set[int] = set()
    queue: deque[tuple[NodeID, int]] = deque()
    for conn in graph.outgoing_connections(graph.id):
        if conn.source_port != inport:
            continue
        if conn.dest == graph.id:
            result.add(conn.dest_port)
        else:
            queue.append((conn.dest, conn.dest_port))

    seen: set[tuple[NodeID, int]] = set()
    while queue:
        node, port = queue.popleft()
        metanode = graph.is_metanode(node)
        seen_key = (node, port if metanode else -1)
        if seen_key in seen:
            continue
        seen.add(seen_key)
        live_ports = graph.connected_out_ports(node, port) if metanode else None
        for conn in graph.outgoing_connections(node):
            if live_ports is not None and conn.source_port not in live_ports:
                continue
            if conn.dest == graph.id:
                result.add(conn.dest_port)
            else:
                queue.append((conn.dest, conn.dest_port))
    return result


def connected_in_ports(graph: GraphModel, outport: int) -> set[int]:
    """Container inports that reach the given container outport."""
    result: set[int] = set()
    queue: deque[tuple[NodeID, int]] = deque()
    for conn in graph.incoming_connections(graph.id):
        if conn.dest_port != outport:
            continue
        if conn.source == graph.id:
            result.add(conn.source_port)
        else:
            queue.append((conn.source, conn.source_port))

    seen: set[tuple[NodeID, int]] = set()
    while queue:
        node, port = queue.popleft()
        metanode = graph.is_metanode(node)
        seen_key = (node, port if metanode else -1)
        if seen_key in seen:
            continue
        seen.add(seen_key)
        live_ports = graph.connected_in_ports(node, port) if metanode else None
        for conn in graph.incoming_connections(node):
            if live_ports is not None and conn.dest_port not in live_ports:
                continue
            if conn.source == graph.id:
                result.add(conn.source_port)
            else:
                queue.append((conn.source, conn.source_port))
    return result


def to_networkx(graph: GraphModel) -> nx.DiGraph:
    """Plain node-to-node view of the workflow (boundary connections dropped)."""
    G = nx.DiGraph()
    for node in graph.nodes():
        G.add_node(node)
    for node in graph.nodes():
        for succ in graph.successors(node):
            G.add_edge(node, succ)
    return G


def longest_path_layers(
    graph: GraphModel,
    start: NodeID | None = None,
    end: NodeID | None = None,
) -> list[list[NodeID]]:
    """Nodes between ``start`` and ``end`` grouped by longest-path depth.

    Every node is placed behind all of its predecessors. ``start`` and ``end``
    themselves are excluded; without them the whole workflow is layered.

    Raises:
        TraversalError: If the workflow contains a cycle.
    """
    G = to_networkx(graph)
    candidates = set(G.nodes())
    if start is not None:
        candidates &= nx.descendants(G, start)
    if end is not None:
        candidates &= nx.ancestors(G, end)
        candidates.discard(end)
    sub = G.subgraph(candidates)

    try:
        order = list(nx.lexicographical_topological_sort(sub))
    except nx.NetworkXUnfeasible as e:
        raise TraversalError(f"Cannot layer a cyclic workflow: {e}") from e

    depth: dict[NodeID, int] = {}
    for node in order:
        depth[node] = max((depth[p] + 1 for p in sub.predecessors(node)), default=0)

    layers: list[list[NodeID]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for node in order:
        layers[depth[node]].append(node)
    return [sorted(layer) for layer in layers]
