"""buildtree: build-graph task orchestrator."""

__version__ = "0.3.0"
