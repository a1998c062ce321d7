"""Core data models shared by the graph analysis engine.

Node identifiers, execution states, scope roles and the per-node dependent
properties record. Everything here is free of graph logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class NodeNotFoundError(Exception):
    """Node id is unknown to the graph or to the last computed pass."""

    pass


@dataclass(frozen=True, order=True)
class NodeID:
    """Hierarchical node identifier, e.g. ``0:3:5``.

    The last index identifies the node inside its workflow; the prefix is the
    id of the containing workflow (which is itself a node in its parent).
    """

    path: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("NodeID path must not be empty")
        if any(ix < 0 for ix in self.path):
            raise ValueError(f"Invalid NodeID path: {self.path}")

    @classmethod
    def root(cls, index: int = 0) -> NodeID:
        return cls((index,))

    @classmethod
    def parse(cls, text: str) -> NodeID:
        """Parse the ``a:b:c`` notation produced by ``str()``."""
        try:
            return cls(tuple(int(part) for part in text.strip().split(":")))
        except ValueError as e:
            raise ValueError(f"Invalid NodeID: '{text}'") from e

    def child(self, index: int) -> NodeID:
        return NodeID(self.path + (index,))

    @property
    def parent(self) -> NodeID | None:
        if len(self.path) == 1:
            return None
        return NodeID(self.path[:-1])

    @property
    def index(self) -> int:
        return self.path[-1]

    def is_ancestor_of(self, other: NodeID) -> bool:
        return len(other.path) > len(self.path) and other.path[: len(self.path)] == self.path

    def __str__(self) -> str:
        return ":".join(str(ix) for ix in self.path)


class NodeState(str, Enum):
    """Execution phase of a node, owned by the graph model."""

    IDLE = "idle"  # Not configured, cannot run by itself
    CONFIGURED = "configured"  # Ready to execute
    MARKED_FOR_EXECUTION = "marked_for_execution"  # Waiting for predecessors
    QUEUED = "queued"  # Handed to a job manager
    EXECUTING = "executing"
    EXECUTED = "executed"

    @property
    def is_executable(self) -> bool:
        return self is NodeState.CONFIGURED

    @property
    def is_in_progress(self) -> bool:
        return self in _IN_PROGRESS_STATES

    @property
    def is_executed(self) -> bool:
        return self is NodeState.EXECUTED

    @property
    def is_resettable(self) -> bool:
        return self in (NodeState.CONFIGURED, NodeState.EXECUTED)


_IN_PROGRESS_STATES = frozenset(
    {NodeState.MARKED_FOR_EXECUTION, NodeState.QUEUED, NodeState.EXECUTING}
)


class ScopeRole(str, Enum):
    """Role of a node with respect to loop and try/catch scopes."""

    NONE = "none"
    SCOPE_START = "scope_start"  # Loop head, try block start
    SCOPE_END = "scope_end"  # Loop tail, catch/end block


class NodeKind(str, Enum):
    """Kind of node inside a workflow."""

    NATIVE = "native"
    METANODE = "metanode"  # Container wired through port by port
    COMPONENT = "component"  # Container treated as a single node


class ContainerKind(str, Enum):
    """What owns a workflow."""

    PROJECT = "project"
    METANODE = "metanode"
    COMPONENT = "component"


class ConnectionKind(str, Enum):
    """Connection type relative to the workflow that holds it."""

    STD = "std"  # node -> node
    WFM_IN = "wfm_in"  # container inport -> node
    WFM_OUT = "wfm_out"  # node -> container outport
    WFM_THROUGH = "wfm_through"  # container inport -> container outport


@dataclass(frozen=True, order=True)
class Connection:
    """A single port-to-port connection.

    Boundary connections use the id of the holding workflow as source (for
    container inports) or destination (for container outports).
    """

    source: NodeID
    source_port: int
    dest: NodeID
    dest_port: int
    kind: ConnectionKind = ConnectionKind.STD


@dataclass
class DependentProperties:
    """Per-node results of one dependency update pass.

    Flags can only be raised during a pass; a new record is created for every
    pass, so nothing carries over from earlier ones.
    """

    has_executable_predecessor: bool = False
    has_executing_successor: bool = False

    def mark_executable_predecessor(self) -> bool:
        """Set the flag. Returns True if it was not set before."""
        if self.has_executable_predecessor:
            return False
        self.has_executable_predecessor = True
        return True

    def mark_executing_successor(self) -> bool:
        """Set the flag. Returns True if it was not set before."""
        if self.has_executing_successor:
            return False
        self.has_executing_successor = True
        return True

    def copy(self) -> DependentProperties:
        return DependentProperties(
            has_executable_predecessor=self.has_executable_predecessor,
            has_executing_successor=self.has_executing_successor,
        )
