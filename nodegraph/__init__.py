"""nodegraph - workflow graph analysis engine.

Tracks which nodes of a dataflow workflow can be executed or reset, and how
nodes nest inside loop and try/catch scopes.
"""

__version__ = "0.1.0"
