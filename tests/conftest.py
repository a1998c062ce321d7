# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nodegraph test suite.

Provides:
- Small workflows built in memory (chains, loops, containers)
- Helpers that run the dependency and scope passes under the workflow lock
- Workflow YAML files for loader and CLI tests

Usage:
    Fixtures are discovered by pytest automatically.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from nodegraph.core.dependencies import DependencyTracker
from nodegraph.core.graph_model import Workflow
from nodegraph.core.models import NodeID, NodeState, ScopeRole
from nodegraph.core.scopes import ScopeAnnotator
from nodegraph.core.settings import EngineSettings


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings() -> EngineSettings:
    """Default settings (lock required)."""
    return EngineSettings()


@pytest.fixture
def unlocked_settings() -> EngineSettings:
    """Settings that skip the lock ownership check."""
    return EngineSettings(require_lock=False)


# =============================================================================
# In-memory workflows
# =============================================================================


@pytest.fixture
def workflow() -> Workflow:
    """Empty top-level workflow."""
    return Workflow(name="test")


@pytest.fixture
def linear_chain(workflow: Workflow) -> tuple[Workflow, list[NodeID]]:
    """A -> B -> C -> D, all idle."""
    ids = [workflow.add_node(name) for name in ("A", "B", "C", "D")]
    for source, dest in zip(ids, ids[1:]):
        workflow.connect(source, 0, dest, 0)
    return workflow, ids


@pytest.fixture
def simple_loop(workflow: Workflow) -> tuple[Workflow, dict[str, NodeID]]:
    """S (start) -> B -> C -> E (end)."""
    ids = {
        "S": workflow.add_node("Loop Start", role=ScopeRole.SCOPE_START),
        "B": workflow.add_node("B"),
        "C": workflow.add_node("C"),
        "E": workflow.add_node("Loop End", role=ScopeRole.SCOPE_END),
    }
    workflow.connect(ids["S"], 0, ids["B"], 0)
    workflow.connect(ids["B"], 0, ids["C"], 0)
    workflow.connect(ids["C"], 0, ids["E"], 0)
    return workflow, ids


@pytest.fixture
def metanode_workflow(workflow: Workflow) -> tuple[Workflow, Workflow, dict[str, NodeID]]:
    """Two independent lanes through one metanode.

    A -> M[0] -> P -> M.out[0] -> C
    B -> M[1] -> Q -> M.out[1] -> D
    """
    ids: dict[str, NodeID] = {}
    ids["A"] = workflow.add_node("A", in_ports=0)
    ids["B"] = workflow.add_node("B", in_ports=0)
    inner = workflow.add_metanode("M", in_ports=2, out_ports=2)
    ids["M"] = inner.id
    ids["C"] = workflow.add_node("C", out_ports=0)
    ids["D"] = workflow.add_node("D", out_ports=0)

    ids["P"] = inner.add_node("P")
    ids["Q"] = inner.add_node("Q")
    inner.connect(inner.id, 0, ids["P"], 0)
    inner.connect(ids["P"], 0, inner.id, 0)
    inner.connect(inner.id, 1, ids["Q"], 0)
    inner.connect(ids["Q"], 0, inner.id, 1)

    workflow.connect(ids["A"], 0, ids["M"], 0)
    workflow.connect(ids["B"], 0, ids["M"], 1)
    workflow.connect(ids["M"], 0, ids["C"], 0)
    workflow.connect(ids["M"], 1, ids["D"], 0)
    return workflow, inner, ids


# =============================================================================
# Pass helpers
# =============================================================================


@pytest.fixture
def track() -> Callable[[Workflow], DependencyTracker]:
    """Run a dependency update under the workflow lock and return the tracker."""

    def _track(wf: Workflow) -> DependencyTracker:
        tracker = DependencyTracker(wf)
        with wf.lock():
            tracker.update()
        return tracker

    return _track


@pytest.fixture
def annotate() -> Callable[[Workflow], ScopeAnnotator]:
    """Run both scope passes under the workflow lock and return the annotator."""

    def _annotate(wf: Workflow) -> ScopeAnnotator:
        annotator = ScopeAnnotator(wf)
        with wf.lock():
            annotator.run_forward()
            annotator.run_backward()
        return annotator

    return _annotate


# =============================================================================
# Workflow files
# =============================================================================


@pytest.fixture
def write_workflow(tmp_path: Path) -> Callable[[dict, str], Path]:
    """Write a workflow document to a YAML file and return its path."""

    def _write(data: dict, name: str = "workflow.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def loop_document() -> dict:
    """Reader -> Loop Start -> Transform -> Loop End -> Writer, reader configured."""
    return {
        "name": "loop-example",
        "description": "Properly closed loop",
        "nodes": [
            {"id": 0, "name": "Reader", "inports": 0, "state": NodeState.CONFIGURED.value},
            {"id": 1, "name": "Loop Start", "type": "loop_start"},
            {"id": 2, "name": "Transform"},
            {"id": 3, "name": "Loop End", "type": "loop_end"},
            {"id": 4, "name": "Writer", "outports": 0},
        ],
        "connections": [
            {"source": 0, "dest": 1},
            {"source": 1, "dest": 2},
            {"source": 2, "dest": 3},
            {"source": 3, "dest": 4},
        ],
    }


@pytest.fixture
def unclosed_loop_document() -> dict:
    """Loop Start -> Transform, with no loop end."""
    return {
        "name": "unclosed",
        "nodes": [
            {"id": 0, "name": "Loop Start", "type": "loop_start"},
            {"id": 1, "name": "Transform"},
        ],
        "connections": [{"source": 0, "dest": 1}],
    }


@pytest.fixture
def metanode_document() -> dict:
    """Reader feeding a metanode that wraps a single node."""
    return {
        "name": "with-metanode",
        "nodes": [
            {"id": 0, "name": "Reader", "inports": 0, "state": "configured"},
            {
                "id": 1,
                "name": "Wrapper",
                "kind": "metanode",
                "workflow": {
                    "nodes": [{"id": 0, "name": "Inner"}],
                    "connections": [
                        {"source": "inport", "dest": 0},
                        {"source": 0, "dest": "outport"},
                    ],
                },
            },
            {"id": 2, "name": "Writer", "outports": 0},
        ],
        "connections": [
            {"source": 0, "dest": 1},
            {"source": 1, "dest": 2},
        ],
    }
