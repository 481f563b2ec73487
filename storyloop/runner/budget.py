"""
Budget tracking for agent runs.

Holds no state of its own: every counter lives on the Run so that a
checkpoint captures the whole budget picture.
"""

import logging
from typing import Optional

from storyloop.lib.errors import BudgetError
from storyloop.runner.models import BudgetConfig, Iteration, Run

logger = logging.getLogger(__name__)

LIMIT_ITERATIONS = "max_iterations"
LIMIT_COST = "max_cost_usd"
LIMIT_WALL_CLOCK = "max_wall_clock_seconds"


def validate_budget(budget: BudgetConfig) -> None:
    """Raise BudgetError if the configuration cannot drive a run."""
    if budget.max_iterations < 1:
        raise BudgetError(f"max_iterations must be >= 1 (got {budget.max_iterations})")
    if budget.max_cost_usd is not None and budget.max_cost_usd <= 0:
        raise BudgetError(f"max_cost_usd must be positive (got {budget.max_cost_usd})")
    if budget.max_wall_clock_seconds is not None and budget.max_wall_clock_seconds <= 0:
        raise BudgetError(
            f"max_wall_clock_seconds must be positive (got {budget.max_wall_clock_seconds})"
        )


class BudgetTracker:

    def exceeded(self, run: Run) -> Optional[str]:
        """Name of the first ceiling the run has reached, or None."""
        budget = run.budget
        if run.iterations_used >= budget.max_iterations:
            return LIMIT_ITERATIONS
        if budget.max_cost_usd is not None and run.total_cost >= budget.max_cost_usd:
            return LIMIT_COST
        if (budget.max_wall_clock_seconds is not None
                and run.elapsed_seconds >= budget.max_wall_clock_seconds):
            return LIMIT_WALL_CLOCK
        return None

    def can_continue(self, run: Run) -> bool:
        return self.exceeded(run) is None

    def charge(self, run: Run, iteration: Iteration) -> None:
        """
        Account one finished iteration against the run.

        Must be called exactly once per iteration number. Charging the same
        number twice raises BudgetError instead of double counting.
        """
        if iteration.number <= run.iterations_used:
            raise BudgetError(
                f"Iteration {iteration.number} already charged to run {run.id} "
                f"({run.iterations_used} used)"
            )
        if run.iterations_used >= run.budget.max_iterations:
            raise BudgetError(f"Run {run.id} has no iterations left to charge")

        run.iterations_used += 1
        run.total_cost += iteration.cost
        run.total_tokens += iteration.tokens
        run.elapsed_seconds += iteration.duration_seconds
        run.iterations.append(iteration)
        logger.debug(
            f"[BUDGET] {run.id}: iteration {iteration.number} cost=${iteration.cost:.4f} "
            f"({run.iterations_used}/{run.budget.max_iterations}, total ${run.total_cost:.4f})"
        )

    def charge_overhead(self, run: Run, seconds: float) -> None:
        """Count time spent outside the agent (branch, push, PR, retries) toward the wall clock."""
        run.elapsed_seconds += max(seconds, 0.0)
