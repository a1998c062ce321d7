"""Scope stacks and per-node graph annotations.

A ``ScopeStack`` is an immutable sequence of scope node ids ordered from the
outermost to the innermost scope. ``GraphAnnotation`` holds everything the
scope annotator computes for one node (or one outport of a metanode) and
implements the forward and backward merge rules used when paths join.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from nodegraph.core.models import NodeID, ScopeRole

MISSING_START_NODE = "Missing Start Node."
MISSING_END_NODE = "Missing End Node."
DIFFERENT_NESTED_LOOPS = "Node can not be part of different (nested) loops."
MULTIPLE_SCOPE_ENDS = "More than one Scope End node connected to this node."

_BACKWARD_ERRORS = frozenset({MISSING_END_NODE, MULTIPLE_SCOPE_ENDS})


@dataclass(frozen=True)
class StackMerge:
    """Result of merging two scope stacks."""

    stack: ScopeStack
    diverged: bool = False


class ScopeStack:
    """Immutable outer-to-inner sequence of enclosing scope ids.

    ``push`` and ``pop`` return new stacks; instances can be shared freely
    between annotations.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[NodeID] = ()):
        self._items: tuple[NodeID, ...] = tuple(items)

    def push(self, node_id: NodeID) -> ScopeStack:
        return ScopeStack(self._items + (node_id,))

    def pop(self) -> ScopeStack:
        """Drop the innermost scope. Popping an empty stack returns it unchanged."""
        if not self._items:
            return self
        return ScopeStack(self._items[:-1])

    @property
    def top(self) -> NodeID | None:
        return self._items[-1] if self._items else None

    def as_tuple(self) -> tuple[NodeID, ...]:
        return self._items

    def merge(self, other: ScopeStack) -> StackMerge:
        """Merge two stacks reaching the same node over different paths.

        Equal stacks and empty side branches merge trivially. Otherwise both
        stacks are walked from the bottom: matching entries are kept, entries
        only one side knows about are spliced in when the other side contains
        the next entry further up. If neither side can be aligned (or an entry
        would repeat) the merge diverges and the result is truncated to the
        common part built so far.
        """
        if self._items == other._items or not other._items:
            return StackMerge(self)
        if not self._items:
            return StackMerge(other)

        mine, theirs = self._items, other._items
        merged: list[NodeID] = []
        i = j = 0
        while i < len(mine) and j < len(theirs):
            if mine[i] == theirs[j]:
                addition = [mine[i]]
                i += 1
                j += 1
            elif mine[i] in theirs[j + 1 :]:
                k = theirs.index(mine[i], j + 1)
                addition = list(theirs[j:k])
                j = k
            elif theirs[j] in mine[i + 1 :]:
                k = mine.index(theirs[j], i + 1)
                addition = list(mine[i:k])
                i = k
            else:
                return StackMerge(ScopeStack(merged), diverged=True)
            if any(node_id in merged for node_id in addition):
                return StackMerge(ScopeStack(merged), diverged=True)
            merged.extend(addition)

        tail = list(mine[i:]) + list(theirs[j:])
        if any(node_id in merged for node_id in tail):
            return StackMerge(ScopeStack(merged), diverged=True)
        merged.extend(tail)
        return StackMerge(ScopeStack(merged))

    def __iter__(self) -> Iterator[NodeID]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._items

    def __getitem__(self, index: int) -> NodeID:
        return self._items[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ScopeStack):
            return self._items == other._items
        if isinstance(other, (tuple, list)):
            return self._items == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"ScopeStack([{', '.join(str(n) for n in self._items)}])"


@dataclass
class GraphAnnotation:
    """Scope analysis result for one node, or one outport of a metanode.

    Attributes:
        id: Node the annotation belongs to.
        outport_index: Metanode outport, -1 for every other node.
        depth: Scope nesting depth (maximum over all incoming paths).
        role: Scope role of the node.
        connected_container_inports: Container inports reaching this node.
        connected_container_outports: Container outports this node reaches.
        forward_stack: Enclosing scope starts, outer to inner. A scope end
            stores the stack it closes (its matching start on top).
        backward_stack: Enclosing scope ends seen walking back from sinks.
        error: Structural scope error, if any.
    """

    id: NodeID
    outport_index: int = -1
    depth: int = 0
    role: ScopeRole = ScopeRole.NONE
    connected_container_inports: set[int] = field(default_factory=set)
    connected_container_outports: set[int] = field(default_factory=set)
    forward_stack: ScopeStack = field(default_factory=ScopeStack)
    backward_stack: ScopeStack = field(default_factory=ScopeStack)
    error: str | None = None

    def __post_init__(self) -> None:
        self._check_scope_end()

    @property
    def key(self) -> tuple[NodeID, int]:
        return (self.id, self.outport_index)

    @classmethod
    def root(
        cls,
        node_id: NodeID,
        outport_index: int = -1,
        role: ScopeRole = ScopeRole.NONE,
        inports: Iterable[int] = (),
    ) -> GraphAnnotation:
        """Annotation for a node without in-graph predecessors."""
        return cls(
            id=node_id,
            outport_index=outport_index,
            role=role,
            connected_container_inports=set(inports),
        )

    # ---------- Forward pass ----------

    def outgoing_depth(self) -> int:
        if self.role is ScopeRole.SCOPE_START:
            return self.depth + 1
        return self.depth

    def outgoing_forward_stack(self) -> ScopeStack:
        if self.role is ScopeRole.SCOPE_START:
            return self.forward_stack.push(self.id)
        if self.role is ScopeRole.SCOPE_END:
            return self.forward_stack.pop()
        return self.forward_stack

    def derive_forward(
        self,
        node_id: NodeID,
        outport_index: int = -1,
        role: ScopeRole = ScopeRole.NONE,
    ) -> GraphAnnotation:
        """Annotation a successor receives from this node."""
        depth = self.outgoing_depth()
        if role is ScopeRole.SCOPE_END:
            depth = max(depth - 1, 0)
        return GraphAnnotation(
            id=node_id,
            outport_index=outport_index,
            depth=depth,
            role=role,
            connected_container_inports=set(self.connected_container_inports),
            forward_stack=self.outgoing_forward_stack(),
        )

    def merge_forward(self, other: GraphAnnotation) -> bool:
        """Merge the annotation arriving over another path into this one.

        Returns:
            True if any field of this annotation changed.

        Raises:
            ValueError: If the two annotations describe different nodes/ports.
        """
        if other.key != self.key:
            raise ValueError(f"Cannot merge annotation of {other.key} into {self.key}")
        changed = False

        if other.depth > self.depth:
            self.depth = other.depth
            changed = True

        if not other.connected_container_inports <= self.connected_container_inports:
            self.connected_container_inports |= other.connected_container_inports
            changed = True

        result = self.forward_stack.merge(other.forward_stack)
        if result.stack != self.forward_stack:
            self.forward_stack = result.stack
            changed = True
        if result.diverged and self.error != DIFFERENT_NESTED_LOOPS:
            self.error = DIFFERENT_NESTED_LOOPS
            changed = True

        if self._check_scope_end():
            changed = True
        return changed

    def _check_scope_end(self) -> bool:
        """Maintain the missing-start error of scope ends. Returns True on change."""
        if self.role is not ScopeRole.SCOPE_END:
            return False
        if not self.forward_stack:
            if self.error is None:
                self.error = MISSING_START_NODE
                return True
        elif self.error == MISSING_START_NODE:
            self.error = None
            return True
        return False

    # ---------- Backward pass ----------

    def outgoing_backward_stack(self) -> ScopeStack:
        if self.role is ScopeRole.SCOPE_END:
            return self.backward_stack.push(self.id)
        if self.role is ScopeRole.SCOPE_START:
            return self.backward_stack.pop()
        return self.backward_stack

    def set_and_merge_backwards(
        self,
        successors: Iterable[GraphAnnotation],
        outports: Iterable[int] = (),
    ) -> None:
        """Set the backward stack from all successor annotations.

        Args:
            successors: Annotations of every successor reached via outgoing
                connections (metanode successors contribute one per linked outport).
            outports: Container outports this node is connected to directly.
        """
        if self.error in _BACKWARD_ERRORS:
            self.error = None
        self.connected_container_outports = set(outports)
        merged: ScopeStack | None = None
        diverged = False
        for successor in sorted(successors, key=lambda a: a.key):
            self.connected_container_outports |= successor.connected_container_outports
            stack = successor.outgoing_backward_stack()
            if merged is None:
                merged = stack
                continue
            result = merged.merge(stack)
            merged = result.stack
            diverged = diverged or result.diverged
        self.backward_stack = merged if merged is not None else ScopeStack()

        # Forward errors win: they make the backward analysis meaningless.
        if self.error is not None:
            return
        if diverged:
            self.error = MULTIPLE_SCOPE_ENDS
        elif self.role is ScopeRole.SCOPE_START and not self.backward_stack:
            self.error = MISSING_END_NODE

    def snapshot(self) -> GraphAnnotation:
        """Detached copy safe to hand out to callers."""
        return GraphAnnotation(
            id=self.id,
            outport_index=self.outport_index,
            depth=self.depth,
            role=self.role,
            connected_container_inports=set(self.connected_container_inports),
            connected_container_outports=set(self.connected_container_outports),
            forward_stack=self.forward_stack,
            backward_stack=self.backward_stack,
            error=self.error,
        )
