"""Workflow manager facade.

Owns one ``Workflow`` with its ``DependencyTracker`` and ``ScopeAnnotator``,
plus one child manager per container node. ``refresh()`` is the single place
that takes the workflow lock and recomputes everything, parent before child,
so nested workflows can read their parent's results across the boundary.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from pathlib import Path

from nodegraph.core.annotations import GraphAnnotation
from nodegraph.core.dependencies import DependencyTracker
from nodegraph.core.graph_model import Workflow
from nodegraph.core.graph_schema import WorkflowDefinition
from nodegraph.core.models import NodeID, NodeNotFoundError, NodeState
from nodegraph.core.scopes import ScopeAnnotator
from nodegraph.core.settings import EngineSettings

logger = logging.getLogger(__name__)


class WorkflowManager:
    """Answers execute/reset and scope questions for a workflow tree.

    Example:
        manager = WorkflowManager.from_yaml("workflow.yaml")
        manager.refresh()
        manager.can_execute_node(NodeID.parse("0:2"))
    """

    def __init__(
        self,
        workflow: Workflow,
        settings: EngineSettings | None = None,
        parent: WorkflowManager | None = None,
    ):
        self.workflow = workflow
        self.settings = settings or EngineSettings()
        self.parent = parent
        self.tracker = DependencyTracker(workflow, self.settings)
        self.annotator = ScopeAnnotator(workflow, self.settings)
        if parent is not None:
            workflow.parent_view = parent.tracker
        self._children: dict[NodeID, WorkflowManager] = {}
        self._sync_children()

    @classmethod
    def from_definition(
        cls, definition: WorkflowDefinition, settings: EngineSettings | None = None
    ) -> WorkflowManager:
        settings = settings or EngineSettings()
        return cls(Workflow.from_definition(definition, settings.scope_roles), settings)

    @classmethod
    def from_yaml(cls, path: str | Path, settings: EngineSettings | None = None) -> WorkflowManager:
        return cls.from_definition(WorkflowDefinition.from_yaml(path), settings)

    def _sync_children(self) -> None:
        """Create managers for new container nodes, drop those of removed ones."""
        containers = {node.id: node for node in self.workflow.containers()}
        for node_id in list(self._children):
            if node_id not in containers:
                del self._children[node_id]
        for node_id, node in containers.items():
            if node_id not in self._children:
                self._children[node_id] = WorkflowManager(node.workflow, self.settings, parent=self)

    # ========== Recompute ==========

    def refresh(self) -> None:
        """Recompute dependent properties and scope annotations of the whole tree.

        Takes the (shared) workflow lock for the duration. Parents are
        refreshed before their children.
        """
        with self.workflow.lock():
            queue: deque[WorkflowManager] = deque([self])
            refreshed = 0
            while queue:
                manager = queue.popleft()
                manager._sync_children()
                manager.tracker.update()
                manager.annotator.run_forward()
                manager.annotator.run_backward()
                refreshed += 1
                queue.extend(manager._children[node_id] for node_id in sorted(manager._children))
        logger.info(f"Refreshed {refreshed} workflow(s) under {self.workflow.id}")

    def set_node_state(self, node_id: NodeID, state: NodeState) -> None:
        """Change a node's state under the lock. Call ``refresh()`` afterwards."""
        with self.workflow.lock():
            self._owner_of(node_id).workflow.set_state(node_id, state)

    # ========== Navigation ==========

    def child(self, node_id: NodeID) -> WorkflowManager:
        """Manager of the content of a container node."""
        try:
            return self._children[node_id]
        except KeyError:
            raise NodeNotFoundError(f"Node {node_id} is not a container of {self.workflow.id}") from None

    def walk(self) -> Iterator[WorkflowManager]:
        """This manager and all nested ones, parents first."""
        queue: deque[WorkflowManager] = deque([self])
        while queue:
            manager = queue.popleft()
            yield manager
            queue.extend(manager._children[node_id] for node_id in sorted(manager._children))

    def _owner_of(self, node_id: NodeID) -> WorkflowManager:
        """Manager of the workflow that directly holds ``node_id``."""
        owner_id = node_id.parent
        for manager in self.walk():
            if manager.workflow.id == owner_id:
                return manager
        raise NodeNotFoundError(f"Node {node_id} is not part of workflow {self.workflow.id}")

    # ========== Queries ==========

    def can_execute_node(self, node_id: NodeID) -> bool:
        return self._owner_of(node_id).tracker.can_execute(node_id)

    def can_reset_node(self, node_id: NodeID) -> bool:
        return self._owner_of(node_id).tracker.can_reset(node_id)

    def get_node_graph_annotations(self, node_id: NodeID) -> tuple[GraphAnnotation, ...]:
        return self._owner_of(node_id).annotator.annotation_of(node_id)

    def scope_errors(self) -> dict[NodeID, str]:
        """Structural scope errors of every workflow in the tree."""
        errors: dict[NodeID, str] = {}
        for manager in self.walk():
            errors.update(manager.annotator.errors())
        return dict(sorted(errors.items()))
