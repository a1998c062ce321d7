"""Terminal rendering of analysis results for the nodegraph CLI."""

from nodegraph.cli_ui.graph_renderer import AnnotationTableRenderer, LayerTreeRenderer

__all__ = [
    "AnnotationTableRenderer",
    "LayerTreeRenderer",
]
