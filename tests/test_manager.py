"""Tests for the workflow manager facade."""

import pytest

from nodegraph.core.annotations import MISSING_END_NODE
from nodegraph.core.graph_model import Workflow
from nodegraph.core.graph_schema import WorkflowDefinition
from nodegraph.core.manager import WorkflowManager
from nodegraph.core.models import NodeID, NodeNotFoundError, NodeState, ScopeRole


@pytest.fixture
def component_tree():
    """Source (configured) -> Comp -> Sink, Comp containing In -> Out."""
    root = Workflow(name="root")
    source = root.add_node("Source", state=NodeState.CONFIGURED, in_ports=0)
    comp = root.add_component("Comp")
    sink = root.add_node("Sink", out_ports=0)
    root.connect(source, 0, comp.id, 0)
    root.connect(comp.id, 0, sink, 0)

    first = comp.add_node("In")
    second = comp.add_node("Out")
    comp.connect(comp.id, 0, first, 0)
    comp.connect(first, 0, second, 0)
    comp.connect(second, 0, comp.id, 0)
    ids = {"source": source, "comp": comp.id, "sink": sink, "in": first, "out": second}
    return root, ids


class TestRefresh:
    """Tests for recomputing a workflow tree."""

    def test_parent_results_flow_into_component(self, component_tree):
        root, ids = component_tree
        manager = WorkflowManager(root)
        manager.refresh()

        assert manager.can_execute_node(ids["comp"])
        assert manager.can_execute_node(ids["in"])
        assert manager.can_execute_node(ids["out"])
        assert manager.can_execute_node(ids["sink"])

    def test_executing_consumer_blocks_reset_inside(self, component_tree):
        root, ids = component_tree
        manager = WorkflowManager(root)
        manager.set_node_state(ids["sink"], NodeState.EXECUTING)
        manager.set_node_state(ids["out"], NodeState.EXECUTED)
        manager.refresh()

        assert not manager.can_reset_node(ids["out"])
        assert not manager.can_reset_node(ids["source"])

    def test_state_inside_container(self, component_tree):
        root, ids = component_tree
        manager = WorkflowManager(root)
        manager.set_node_state(ids["in"], NodeState.EXECUTING)
        manager.refresh()

        assert root.state(ids["comp"]) is NodeState.EXECUTING
        assert not manager.can_execute_node(ids["comp"])
        assert not manager.can_reset_node(ids["source"])

    def test_two_levels_of_metanodes_keep_ports_apart(self):
        """Root -> Outer -> Inner, each inner node wired through both boundaries."""
        root = Workflow(name="root")
        idle_source = root.add_node("Idle source", in_ports=0)
        ready_source = root.add_node("Ready source", state=NodeState.CONFIGURED, in_ports=0)
        outer = root.add_metanode("Outer", in_ports=2, out_ports=2)
        busy_sink = root.add_node("Busy sink", state=NodeState.EXECUTING, out_ports=0)
        idle_sink = root.add_node("Idle sink", out_ports=0)
        root.connect(idle_source, 0, outer.id, 0)
        root.connect(ready_source, 0, outer.id, 1)
        root.connect(outer.id, 0, busy_sink, 0)
        root.connect(outer.id, 1, idle_sink, 0)

        inner = outer.add_metanode("Inner", in_ports=2, out_ports=2)
        for port in (0, 1):
            outer.connect(outer.id, port, inner.id, port)
            outer.connect(inner.id, port, outer.id, port)

        a = inner.add_node("a")
        b = inner.add_node("b")
        inner.connect(inner.id, 0, a, 0)
        inner.connect(a, 0, inner.id, 0)
        inner.connect(inner.id, 1, b, 0)
        inner.connect(b, 0, inner.id, 1)

        manager = WorkflowManager(root)
        manager.refresh()
        tracker = manager.child(outer.id).child(inner.id).tracker
        assert not tracker.has_executable_predecessor(a)
        assert tracker.has_executing_successor(a)
        assert tracker.has_executable_predecessor(b)
        assert not tracker.has_executing_successor(b)
        assert not manager.can_execute_node(a)
        assert manager.can_execute_node(b)

        manager.set_node_state(a, NodeState.EXECUTED)
        manager.set_node_state(b, NodeState.EXECUTED)
        manager.refresh()
        assert not manager.can_reset_node(a)
        assert manager.can_reset_node(b)

    def test_refresh_releases_lock(self, component_tree):
        root, _ = component_tree
        WorkflowManager(root).refresh()
        assert not root.holds_lock()

    def test_walk_is_parent_first(self, component_tree):
        root, ids = component_tree
        manager = WorkflowManager(root)
        assert [m.workflow.id for m in manager.walk()] == [root.id, ids["comp"]]
        assert manager.child(ids["comp"]).parent is manager

    def test_new_container_gets_manager(self, component_tree):
        root, _ = component_tree
        manager = WorkflowManager(root)
        meta = root.add_metanode("Late")
        meta.add_node("inside")
        manager.refresh()
        assert manager.child(meta.id).workflow is meta
        assert manager.get_node_graph_annotations(NodeID.parse(f"{meta.id}:0"))

    def test_removed_container_is_dropped(self, component_tree):
        root, ids = component_tree
        manager = WorkflowManager(root)
        root.remove_node(ids["comp"])
        manager.refresh()
        with pytest.raises(NodeNotFoundError):
            manager.child(ids["comp"])


class TestQueries:
    """Tests for node lookups through the tree."""

    def test_annotations_of_nested_node(self, metanode_document):
        definition = WorkflowDefinition.model_validate(metanode_document)
        manager = WorkflowManager.from_definition(definition)
        manager.refresh()

        (inner,) = manager.get_node_graph_annotations(NodeID.parse("0:1:0"))
        assert inner.connected_container_inports == {0}
        assert inner.connected_container_outports == {0}
        assert len(manager.get_node_graph_annotations(NodeID.parse("0:1"))) == 1

    def test_unknown_node(self, component_tree):
        root, _ = component_tree
        manager = WorkflowManager(root)
        manager.refresh()
        with pytest.raises(NodeNotFoundError):
            manager.can_execute_node(NodeID.parse("0:7:1"))
        with pytest.raises(NodeNotFoundError):
            manager.can_execute_node(NodeID.parse("0:9"))

    def test_scope_errors_of_whole_tree(self):
        root = Workflow(name="root")
        root.add_node("top start", role=ScopeRole.SCOPE_START)
        comp = root.add_component("Comp")
        nested = comp.add_node("nested start", role=ScopeRole.SCOPE_START)
        manager = WorkflowManager(root)
        manager.refresh()

        errors = manager.scope_errors()
        assert errors == {NodeID.parse("0:0"): MISSING_END_NODE, nested: MISSING_END_NODE}

    def test_from_yaml(self, write_workflow, loop_document):
        manager = WorkflowManager.from_yaml(write_workflow(loop_document))
        manager.refresh()
        assert manager.scope_errors() == {}
        assert manager.annotator.depth(NodeID.parse("0:2")) == 1
        assert manager.can_execute_node(NodeID.parse("0:4"))
