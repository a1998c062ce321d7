"""CLI entry point for nodegraph.

Commands:
- nodegraph analyze: Show scope annotations and execute/reset answers
- nodegraph validate: Check a workflow for definition and scope errors
- nodegraph layers: Show the longest-path layering of a workflow
"""

from __future__ import annotations

import logging
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from nodegraph.cli_ui.graph_renderer import AnnotationTableRenderer, LayerTreeRenderer
from nodegraph.core.graph_schema import WorkflowDefinition, WorkflowDefinitionError
from nodegraph.core.manager import WorkflowManager
from nodegraph.core.settings import EngineSettings, SettingsError, load_settings

console = Console()

logger = logging.getLogger(__name__)


def _load_manager(workflow_file: str, settings: EngineSettings) -> WorkflowManager:
    """Load, build and refresh a workflow, exiting with status 1 on bad input."""
    try:
        manager = WorkflowManager.from_yaml(workflow_file, settings)
    except WorkflowDefinitionError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    manager.refresh()
    return manager


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Settings file (default: .nodegraph/engine.yaml, then ~/.nodegraph/engine.yaml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """nodegraph - dependency and scope analysis for node workflows."""
    try:
        settings = load_settings(config_path)
    except SettingsError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if verbose:
        logging.getLogger("nodegraph").setLevel(logging.DEBUG)
    logger.debug(f"Using settings: {settings.model_dump()}")

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--stacks/--no-stacks", default=None, help="Show forward/backward scope stacks")
@click.pass_context
def analyze(ctx: click.Context, workflow_file: str, stacks: bool | None) -> None:
    """Show depth, scopes and execute/reset answers for every node."""
    settings: EngineSettings = ctx.obj["settings"]
    manager = _load_manager(workflow_file, settings)

    show_stacks = settings.show_stacks if stacks is None else stacks
    AnnotationTableRenderer(console, show_stacks=show_stacks).print(manager)

    errors = manager.scope_errors()
    if errors:
        console.print(f"\n[red bold]{len(errors)} scope error(s)[/]")
    else:
        console.print("\n[green]✓ No scope errors[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def validate(ctx: click.Context, workflow_file: str) -> None:
    """Check a workflow file; exit status 1 if anything is wrong."""
    settings: EngineSettings = ctx.obj["settings"]
    try:
        definition = WorkflowDefinition.from_yaml(workflow_file)
    except WorkflowDefinitionError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    errors = definition.validate_graph()
    if errors:
        console.print("[red bold]Definition errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)

    manager = _load_manager(workflow_file, settings)
    scope_errors = manager.scope_errors()
    if scope_errors:
        console.print("[red bold]Scope errors:[/]")
        for node_id, message in scope_errors.items():
            console.print(f"  [red]• {node_id}: {escape(message)}[/]")
        sys.exit(1)

    node_count = sum(len(m.workflow.nodes()) for m in manager.walk())
    console.print(
        Panel(
            f"[green]✓ Workflow is valid[/]\n"
            f"[bold]Name:[/] {escape(definition.name)}\n"
            f"[bold]Nodes:[/] {node_count}",
            title="validate",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def layers(ctx: click.Context, workflow_file: str) -> None:
    """Show the nodes of a workflow grouped by longest-path depth."""
    settings: EngineSettings = ctx.obj["settings"]
    manager = _load_manager(workflow_file, settings)
    LayerTreeRenderer(console).print(manager)


if __name__ == "__main__":
    main()
