"""Terminal rendering of analysis results.

Tables of per-node annotations and dependency answers, and a tree view of
workflow layers, built with Rich.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from nodegraph.core.annotations import ScopeStack
from nodegraph.core.models import NodeKind, NodeState, ScopeRole
from nodegraph.core.traversal import TraversalError, longest_path_layers

if TYPE_CHECKING:
    from nodegraph.core.manager import WorkflowManager

# Node kind symbols and colors
KIND_STYLES = {
    NodeKind.NATIVE: ("[ ]", "cyan"),
    NodeKind.METANODE: ("[M]", "blue"),
    NodeKind.COMPONENT: ("[C]", "magenta"),
}

ROLE_SYMBOLS = {
    ScopeRole.NONE: "",
    ScopeRole.SCOPE_START: "[green]▶ start[/]",
    ScopeRole.SCOPE_END: "[yellow]◀ end[/]",
}

STATE_COLORS = {
    NodeState.IDLE: "dim",
    NodeState.CONFIGURED: "yellow",
    NodeState.MARKED_FOR_EXECUTION: "blue",
    NodeState.QUEUED: "blue",
    NodeState.EXECUTING: "blue bold",
    NodeState.EXECUTED: "green",
}


def format_stack(stack: ScopeStack) -> str:
    """Outer-to-inner stack as ``0:1 > 0:4``; a dash when empty."""
    if not stack:
        return "-"
    return " > ".join(str(node_id) for node_id in stack)


def _flag(value: bool) -> str:
    return "[green]✓[/]" if value else "[dim]✗[/]"


class AnnotationTableRenderer:
    """Renders scope annotations and execute/reset answers as a Rich table.

    Node names come from workflow files, so they are escaped before they are
    put into markup.
    """

    def __init__(self, console: Console | None = None, show_stacks: bool = True):
        self.console = console or Console()
        self.show_stacks = show_stacks

    def render(self, manager: WorkflowManager) -> Table:
        """One row per annotation of every workflow in the tree.

        The manager must have been refreshed.
        """
        safe_name = escape(manager.workflow.name)
        table = Table(title=f"Workflow: {safe_name}")

        table.add_column("Node", style="cyan")
        table.add_column("Name")
        table.add_column("State", justify="center")
        table.add_column("Depth", justify="right")
        table.add_column("Role", justify="center")
        if self.show_stacks:
            table.add_column("Forward stack")
            table.add_column("Backward stack")
        table.add_column("Exec", justify="center")
        table.add_column("Reset", justify="center")
        table.add_column("Error", style="red", max_width=40)

        for current in manager.walk():
            workflow = current.workflow
            for annotation in current.annotator.annotations_by_depth():
                node = workflow.get_node(annotation.id)
                symbol, color = KIND_STYLES.get(node.kind, ("[ ]", "white"))
                label = f"{annotation.id}"
                if annotation.outport_index >= 0:
                    label += f" (out {annotation.outport_index})"

                state = workflow.state(annotation.id)
                state_color = STATE_COLORS.get(state, "white")
                row = [
                    label,
                    f"[{color}]{symbol}[/] {escape(node.name)}",
                    f"[{state_color}]{state.value}[/]",
                    str(annotation.depth),
                    ROLE_SYMBOLS.get(annotation.role, ""),
                ]
                if self.show_stacks:
                    row.append(format_stack(annotation.forward_stack))
                    row.append(format_stack(annotation.backward_stack))
                row.extend(
                    [
                        _flag(current.tracker.can_execute(annotation.id)),
                        _flag(current.tracker.can_reset(annotation.id)),
                        escape(annotation.error or ""),
                    ]
                )
                table.add_row(*row)

        return table

    def print(self, manager: WorkflowManager) -> None:
        self.console.print(self.render(manager))


class LayerTreeRenderer:
    """Renders a workflow tree as layers of nodes (longest-path depth).

    Containers show their own content as a nested branch.
    """

    def __init__(self, console: Console | None = None, max_depth: int = 20):
        self.console = console or Console()
        self.max_depth = max_depth

    def render(self, manager: WorkflowManager) -> Tree:
        safe_name = escape(manager.workflow.name)
        tree = Tree(f"[bold]{safe_name}[/] ({manager.workflow.id})")
        self._add_workflow(tree, manager, depth=0)
        return tree

    def _add_workflow(self, parent: Tree, manager: WorkflowManager, depth: int) -> None:
        if depth >= self.max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return

        workflow = manager.workflow
        try:
            layers = longest_path_layers(workflow)
        except TraversalError as e:
            parent.add(f"[red]Error: {escape(str(e))}[/]")
            return
        if not layers:
            parent.add("[dim](empty)[/]")
            return

        for index, layer in enumerate(layers):
            branch = parent.add(f"[dim]layer {index}[/]")
            for node_id in layer:
                node = workflow.get_node(node_id)
                symbol, color = KIND_STYLES.get(node.kind, ("[ ]", "white"))
                text = f"[{color}]{symbol} {escape(node.name)}[/] [dim]{node_id}[/]"
                role = ROLE_SYMBOLS.get(node.role, "")
                if role:
                    text += f" {role}"
                node_branch = branch.add(text)
                if node.is_container:
                    self._add_workflow(node_branch, manager.child(node_id), depth + 1)

    def print(self, manager: WorkflowManager) -> None:
        self.console.print(self.render(manager))
