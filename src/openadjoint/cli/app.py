"""Command-line interface for OpenAdjoint.

Builds the states, bindings, objective and constraints described by a run
configuration, runs the configured optimizer and saves the history.
"""

import argparse
import logging
import os
import time
import traceback
from typing import List, Optional

from openadjoint.core.config import RunConfig
from openadjoint.core.exceptions import OpenAdjointError
from openadjoint.core.registry import (
    create_design_vector,
    create_form,
    create_state,
    create_variable_to_simulation,
)
from openadjoint.solver.adjoint_forms import SumCompositeForm
from openadjoint.solver.adjoint_nl_problem import AdjointNLProblem
from openadjoint.solver.optimizer import make_nl_solver


def setup_logging(debug_mode: bool = False) -> None:
    """Configure logging based on debug mode.

    Args:
        debug_mode: If True, set logging level to DEBUG, otherwise INFO
    """
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed command line arguments
    """
    parser = argparse.ArgumentParser(
        description='Run an adjoint-based design optimization described by a YAML or JSON file'
    )
    parser.add_argument('config', help='Path to the run configuration (.yaml, .yml or .json)')
    parser.add_argument('-o', '--output', default=None, help='Output directory (overrides the configuration)')
    parser.add_argument('--plot', action='store_true', help='Save a convergence plot next to the history')
    parser.add_argument('--debug', action='store_true', help='Enable debug output')
    return parser.parse_args(argv)


def build_problem(config: RunConfig):
    """Create the problem and the initial design of a run configuration.

    Returns:
        tuple: ``(problem, x0)``
    """
    states = [create_state(s) for s in config.states]
    v2s = [create_variable_to_simulation(v, states) for v in config.variable_to_simulation]
    forms = [create_form(f, v2s, states) for f in config.functionals]
    if not forms:
        raise OpenAdjointError("The configuration defines no functional")
    objective = forms[0] if len(forms) == 1 else SumCompositeForm(v2s, forms)
    constraints = [create_form(c, v2s, states) for c in config.constraints]
    problem = AdjointNLProblem(objective, v2s, states, config.optimization, constraints)
    return problem, create_design_vector(config.parameters)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to run an optimization.

    Returns:
        Exit code: 0 for success, non-zero for error
    """
    args = parse_arguments(argv)
    setup_logging(args.debug)
    logger = logging.getLogger(__name__)

    if not os.path.exists(args.config):
        logger.error(f"Configuration file not found: {args.config}")
        return 1

    try:
        config = RunConfig.from_file(args.config)
        output_dir = args.output or config.output_directory
        os.makedirs(output_dir, exist_ok=True)

        problem, x0 = build_problem(config)
        logger.info(f"Optimizing {len(x0)} design variables over {len(problem.states)} states")

        start_time = time.time()
        result = make_nl_solver(config.optimization).minimize(problem, x0)
        logger.info(f"Optimization finished in {time.time() - start_time:.2f} seconds: {result.reason.value}")
        logger.info(f"Final objective: {result.fun:.6e}")

        history_file = config.optimization.history_file or os.path.join(output_dir, 'history.csv')
        problem.save_history(history_file)

        if args.plot:
            from openadjoint.visualization.history import plot_history
            plot_history(problem.history, title='Optimization history',
                         save_path=os.path.join(output_dir, 'history.png'))
    except OpenAdjointError as e:
        logger.error(f"Optimization failed: {e}")
        if args.debug:
            logger.debug(traceback.format_exc())
        return 1

    return 0
