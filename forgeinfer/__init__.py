"""Computation-graph engine with a pluggable operator registry, graph fusion and greedy generation."""

__version__ = "0.5.0"

__all__ = ["fusion", "generate", "graph", "ops", "params"]