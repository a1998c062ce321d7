"""Tests for traversal helpers."""

import pytest

from nodegraph.core.graph_model import Workflow
from nodegraph.core.traversal import (
    TraversalError,
    breadth_first,
    connected_in_ports,
    connected_out_ports,
    kahn_order,
    longest_path_layers,
    sink_nodes,
    source_nodes,
)


class TestBreadthFirst:
    """Tests for the guarded breadth-first expansion."""

    DIAMOND = {"a": ["b", "c"], "b": ["d"], "c": ["d"], "d": []}

    def test_each_node_expanded_once(self):
        marked: set[str] = set()
        expansions: list[str] = []

        def neighbours(node):
            expansions.append(node)
            return self.DIAMOND[node]

        def visit(node):
            if node in marked:
                return False
            marked.add(node)
            return True

        count = breadth_first(["a"], neighbours, visit, budget=len(self.DIAMOND) + 1)
        assert count == 4
        assert sorted(expansions) == ["a", "b", "c", "d"]
        assert marked == {"b", "c", "d"}

    def test_flags_stay_set_during_pass(self):
        flags = {node: False for node in self.DIAMOND}
        history: list[tuple[str, bool]] = []

        def visit(node):
            history.append((node, flags[node]))
            if flags[node]:
                return False
            flags[node] = True
            return True

        breadth_first(["a"], lambda n: self.DIAMOND[n], visit)
        # "d" is reached twice; the second time it is already marked
        assert [seen for node, seen in history if node == "d"] == [False, True]

    def test_budget_exceeded(self):
        with pytest.raises(TraversalError, match="budget"):
            breadth_first(["a"], lambda n: ["a"], lambda n: True, budget=3)


class TestKahnOrder:
    """Tests for breadth-first topological ordering."""

    def test_predecessors_first(self):
        order = kahn_order(["d", "c", "b", "a"], {"b": ["a"], "c": ["a"], "d": ["b", "c"]})
        assert order.index("a") < order.index("b") < order.index("d")
        assert order.index("c") < order.index("d")

    def test_ties_keep_key_order(self):
        assert kahn_order(["x", "y", "z"], {}) == ["x", "y", "z"]

    def test_cycle_raises(self):
        with pytest.raises(TraversalError, match="Cycle detected"):
            kahn_order(["a", "b", "c"], {"a": ["b"], "b": ["a"]})

    def test_unknown_predecessor_raises(self):
        with pytest.raises(TraversalError, match="not a known key"):
            kahn_order(["a"], {"a": ["missing"]})


class TestGraphQueries:
    """Tests for sources, sinks and layering on a workflow."""

    @pytest.fixture
    def diamond(self, workflow: Workflow):
        a = workflow.add_node("a")
        b = workflow.add_node("b")
        c = workflow.add_node("c", in_ports=2)
        d = workflow.add_node("d", in_ports=2)
        workflow.connect(a, 0, b, 0)
        workflow.connect(a, 0, c, 0)
        workflow.connect(b, 0, c, 1)
        workflow.connect(b, 0, d, 0)
        workflow.connect(c, 0, d, 1)
        return workflow, (a, b, c, d)

    def test_sources_and_sinks(self, diamond):
        wf, (a, b, c, d) = diamond
        assert source_nodes(wf) == [a]
        assert sink_nodes(wf) == [d]

    def test_layers_of_whole_workflow(self, diamond):
        wf, (a, b, c, d) = diamond
        assert longest_path_layers(wf) == [[a], [b], [c], [d]]

    def test_layers_between_nodes_exclude_endpoints(self, diamond):
        wf, (a, b, c, d) = diamond
        assert longest_path_layers(wf, start=a, end=d) == [[b], [c]]

    def test_layers_of_empty_workflow(self, workflow):
        assert longest_path_layers(workflow) == []


class TestContainerPorts:
    """Tests for port-to-port reachability inside a container."""

    def test_lanes_stay_separate(self, metanode_workflow):
        _, inner, _ = metanode_workflow
        assert connected_out_ports(inner, 0) == {0}
        assert connected_out_ports(inner, 1) == {1}
        assert connected_in_ports(inner, 1) == {1}

    def test_pass_through_and_fan_out(self, workflow):
        inner = workflow.add_metanode("M", in_ports=2, out_ports=3)
        n = inner.add_node("n")
        inner.connect(inner.id, 0, n, 0)
        inner.connect(n, 0, inner.id, 0)
        inner.connect(n, 0, inner.id, 1)
        inner.connect(inner.id, 1, inner.id, 2)

        assert connected_out_ports(inner, 0) == {0, 1}
        assert connected_out_ports(inner, 1) == {2}
        assert connected_in_ports(inner, 2) == {1}

    def test_nested_metanode_forwards_per_port(self, workflow):
        outer = workflow.add_metanode("Outer", in_ports=2, out_ports=2)
        inner = outer.add_metanode("Inner", in_ports=2, out_ports=2)
        inner.connect(inner.id, 0, inner.id, 1)
        inner.connect(inner.id, 1, inner.id, 0)
        outer.connect(outer.id, 0, inner.id, 0)
        outer.connect(outer.id, 1, inner.id, 1)
        outer.connect(inner.id, 0, outer.id, 0)
        outer.connect(inner.id, 1, outer.id, 1)

        assert connected_out_ports(outer, 0) == {1}
        assert connected_out_ports(outer, 1) == {0}
        assert connected_in_ports(outer, 0) == {1}
