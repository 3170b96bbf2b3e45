"""
Export of simulation states and optimization histories.

States are written through meshio (VTU by default) with the displacement of
one step as point data and the material fields as cell data; histories are
written as CSV through pandas.
"""

import logging
import os
from typing import Optional, Union

import numpy as np
import pandas as pd

# Configure logging
logger = logging.getLogger(__name__)


def _ensure_directory(filename: Union[str, os.PathLike]) -> None:
    output_dir = os.path.dirname(os.path.abspath(filename))
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir, exist_ok=True)
        logger.info(f"Created output directory: {output_dir}")


def write_state(state, filename: Union[str, os.PathLike], step: Optional[int] = None) -> None:
    """Write the mesh of ``state`` with the solution of one step.

    Args:
        state: Solved or unsolved state (zero displacement when unsolved)
        filename: Output file; the format follows the extension
        step: Solution column, last one by default

    Raises:
        ValueError: If ``step`` is outside the stored history
    """
    mesh = state.mesh
    point_data = {}
    solution = getattr(state, 'solution', None)
    if solution is not None and not state.needs_solve:
        column = solution.shape[1] - 1 if step is None else step
        if not 0 <= column < solution.shape[1]:
            raise ValueError(f"Step {column} outside [0, {solution.shape[1] - 1}]")
        u = solution[:, column].reshape(-1, 2)
        point_data['displacement'] = np.hstack([u, np.zeros((len(u), 1))])

    cell_data = {'lambda': state.lam, 'mu': state.mu, 'density': state.density}

    _ensure_directory(filename)
    logger.info(f"Writing state to: {filename}")
    mesh.write(filename, point_data=point_data, cell_data=cell_data)


def write_history_csv(history: pd.DataFrame, filename: Union[str, os.PathLike]) -> None:
    """Write an optimization history table to CSV."""
    _ensure_directory(filename)
    logger.info(f"Writing optimization history to: {filename}")
    history.to_csv(filename, index=False)


def read_history_csv(filename: Union[str, os.PathLike]) -> pd.DataFrame:
    if not os.path.exists(filename):
        raise FileNotFoundError(f"History file not found: {filename}")
    return pd.read_csv(filename)
