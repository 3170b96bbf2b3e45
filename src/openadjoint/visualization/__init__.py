"""Plotting utilities."""

from openadjoint.visualization.history import plot_history

__all__ = ["plot_history"]
