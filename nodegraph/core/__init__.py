"""Core modules for the nodegraph engine."""

from nodegraph.core.annotations import GraphAnnotation, ScopeStack
from nodegraph.core.dependencies import DependencyTracker
from nodegraph.core.graph_model import GraphModel, Workflow
from nodegraph.core.manager import WorkflowManager
from nodegraph.core.models import (
    NodeID,
    NodeNotFoundError,
    NodeState,
    ScopeRole,
)
from nodegraph.core.scopes import ScopeAnnotator

__all__ = [
    "DependencyTracker",
    "GraphAnnotation",
    "GraphModel",
    "NodeID",
    "NodeNotFoundError",
    "NodeState",
    "ScopeAnnotator",
    "ScopeRole",
    "ScopeStack",
    "Workflow",
    "WorkflowManager",
]
