"""
Convergence plots of optimization histories.
"""

import logging
import os
from typing import Optional

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Configure logging
logger = logging.getLogger(__name__)


def plot_history(
    history: pd.DataFrame,
    title: Optional[str] = None,
    save_path: Optional[str] = None,
    log_scale: bool = True,
    show: bool = False,
) -> plt.Figure:
    """Plot the objective, gradient norm and constraint values per iteration.

    Args:
        history: Table with ``iteration`` and ``value`` columns, optionally
            ``grad_norm`` and ``constraint_*`` columns
        title: Figure title
        save_path: Save the figure to this path
        log_scale: Use a logarithmic axis for the objective and gradient norm
        show: Open an interactive window

    Returns:
        The matplotlib figure

    Raises:
        ValueError: If the history is empty or lacks the required columns
    """
    if history.empty or 'iteration' not in history or 'value' not in history:
        raise ValueError("History needs 'iteration' and 'value' columns")

    constraint_columns = [c for c in history.columns if c.startswith('constraint_')]
    n_axes = 2 if constraint_columns else 1
    fig, axes = plt.subplots(1, n_axes, figsize=(6 * n_axes, 4.5), squeeze=False)
    ax = axes[0, 0]

    it = history['iteration'].to_numpy()
    values = history['value'].to_numpy()
    positive = log_scale and np.all(values > 0)
    ax.plot(it, values, 'o-', color='tab:blue', label='objective')
    if 'grad_norm' in history:
        ax.plot(it, history['grad_norm'].to_numpy(), 's--', color='tab:orange', label='gradient norm')
        positive = positive and np.all(history['grad_norm'].dropna().to_numpy() > 0)
    if positive:
        ax.set_yscale('log')
    ax.set_xlabel('Iteration')
    ax.set_ylabel('Value')
    ax.grid(True, alpha=0.3)
    ax.legend()

    if constraint_columns:
        cax = axes[0, 1]
        for name in constraint_columns:
            cax.plot(it, history[name].to_numpy(), 'o-', label=name)
        cax.axhline(0.0, color='k', linewidth=0.8)
        cax.set_xlabel('Iteration')
        cax.set_ylabel('Constraint value')
        cax.grid(True, alpha=0.3)
        cax.legend()

    if title:
        fig.suptitle(title)
    fig.tight_layout()

    if save_path:
        output_dir = os.path.dirname(os.path.abspath(save_path))
        os.makedirs(output_dir, exist_ok=True)
        fig.savefig(save_path, dpi=150)
        logger.info(f"Saved convergence plot to: {save_path}")

    if show and matplotlib.get_backend().lower() != 'agg':
        plt.show()
    return fig
