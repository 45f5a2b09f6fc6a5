# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Nonlinear optimization solvers for SFM-JIT.

Both solvers iterate on a :class:`FactorGraph` and a :class:`Values`
estimate. Each iteration linearizes the graph at the accepted estimate,
solves the (damped) linear least-squares problem with
`optimization.linear_solvers`, and retracts every variable along its own
manifold:

    x_k ← x_k ⊕ dx_k

Key Concepts
------------
LMConfig
    Levenberg–Marquardt settings. The defaults match the usual GTSAM
    parameters: ``initial_lambda=1e-5``, ``lambda_factor=10``,
    ``lambda_upper_bound=1e5``, relative and absolute error tolerances of
    ``1e-5`` and ``max_iters=100``.

levenberg_marquardt(graph, initial, config, should_stop)
    Damped iteration. A trial step is accepted only when it strictly lowers
    the total error; then λ is divided by ``lambda_factor``. Otherwise λ is
    multiplied by ``lambda_factor`` and the step recomputed from the same
    linearization, up to ``max_retries`` times or until λ reaches its upper
    bound. A point behind a camera or a singular linear system during a
    trial counts as a rejected trial.

gauss_newton(graph, initial, config)
    Undamped iteration that accepts every step.

OptimizationResult
    Final values and error, iteration count, error history, final λ, the
    terminal :class:`OptimizerStatus` and, when the graph holds inequality
    factors, whether the result is primal feasible.

Notes
-----
The solvers never raise for numerical conditions. A run that stops for any
reason other than convergence or cancellation reports it in ``status`` and,
for ``MAX_ITERATIONS`` and ``DAMPING_LIMIT``, emits a
``NonConvergenceWarning``. A factor that references a key with no value is
a structural error and raises ``MissingKeyError`` immediately.

Cancellation is cooperative: ``should_stop()`` is polled once before every
outer iteration, never inside a linearization or a linear solve.
"""

from __future__ import annotations

import enum
import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from sfm_jit.core.errors import CheiralityError, NonConvergenceWarning, SingularSystemError
from sfm_jit.core.factor_graph import FactorGraph
from sfm_jit.core.values import Values, VectorValues
from sfm_jit.optimization.linear_solvers import solve

logger = logging.getLogger(__name__)

_LAMBDA_RESET = 1e-5


class OptimizerStatus(enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    DAMPING_LIMIT = "damping_limit"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GNConfig:
    max_iters: int = 100
    relative_error_tol: float = 1e-5
    absolute_error_tol: float = 1e-5
    error_tol: float = 0.0
    max_step_norm: Optional[float] = None  # clamp on ||dx||, None for no clamp
    linear_solver: str = "sparse"
    feasibility_tol: float = 1e-9


@dataclass
class LMConfig:
    max_iters: int = 100
    relative_error_tol: float = 1e-5
    absolute_error_tol: float = 1e-5
    error_tol: float = 0.0
    initial_lambda: float = 1e-5
    lambda_factor: float = 10.0
    lambda_lower_bound: float = 0.0
    lambda_upper_bound: float = 1e5
    max_retries: int = 10
    diagonal_damping: bool = False
    linear_solver: str = "sparse"
    feasibility_tol: float = 1e-9


@dataclass
class OptimizationResult:
    values: Values
    error: float
    iterations: int
    status: OptimizerStatus
    error_history: List[float] = field(default_factory=list)
    lambda_: float = 0.0
    failure: Optional[Exception] = None
    feasible: Optional[bool] = None

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED


def check_convergence(
    previous_error: float,
    current_error: float,
    config: Union[LMConfig, GNConfig],
) -> bool:
    """
    True when the error is below ``error_tol`` or when the last decrease is
    small in absolute or relative terms.
    """
    if current_error <= config.error_tol:
        return True
    absolute_decrease = previous_error - current_error
    if previous_error > 0.0:
        relative_decrease = absolute_decrease / previous_error
    else:
        relative_decrease = 0.0
    return (
        relative_decrease <= config.relative_error_tol
        or absolute_decrease <= config.absolute_error_tol
    )


def _feasibility(graph: FactorGraph, values: Values, tol: float) -> Optional[bool]:
    if not graph.has_inequalities():
        return None
    return graph.check_feasibility_and_complementarity(values, VectorValues(), tol)


def _finish(
    name: str,
    graph: FactorGraph,
    values: Values,
    error: float,
    iterations: int,
    status: OptimizerStatus,
    history: List[float],
    lam: float,
    failure: Optional[Exception],
    feasibility_tol: float,
) -> OptimizationResult:
    logger.info(
        "%s finished: status=%s, iterations=%d, error=%.6e",
        name, status.value, iterations, error,
    )
    if status in (OptimizerStatus.MAX_ITERATIONS, OptimizerStatus.DAMPING_LIMIT):
        message = f"{name} did not converge ({status.value}) after {iterations} iterations, error={error:.6e}"
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=3)
    feasible = None
    if math.isfinite(error):
        feasible = _feasibility(graph, values, feasibility_tol)
    return OptimizationResult(values, error, iterations, status, history, lam, failure, feasible)


def _initial_error(graph: FactorGraph, initial: Values):
    try:
        return graph.error(initial), None
    except CheiralityError as exc:
        logger.warning("Initial estimate cannot be evaluated: %s", exc)
        return math.inf, exc


def levenberg_marquardt(
    graph: FactorGraph,
    initial: Values,
    config: Optional[LMConfig] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> OptimizationResult:
    """
    Levenberg–Marquardt on a factor graph.

    Args:
        graph: factors to minimize (equality factors enter the cost).
        initial: starting estimate; never modified.
        config: LMConfig, defaults if None.
        should_stop: optional callable polled between outer iterations.

    Returns:
        OptimizationResult with the best accepted estimate.
    """
    config = config or LMConfig()
    values = initial
    lam = config.initial_lambda

    error, failure = _initial_error(graph, initial)
    if failure is not None:
        return _finish("LM", graph, values, error, 0, OptimizerStatus.FAILED, [],
                       lam, failure, config.feasibility_tol)
    history = [error]
    logger.info(
        "LM start: error=%.6e, factors=%d, variables=%d",
        error, len(graph), len(values),
    )

    status: Optional[OptimizerStatus] = None
    iterations = 0
    if error <= config.error_tol:
        status = OptimizerStatus.CONVERGED

    while status is None:
        if iterations >= config.max_iters:
            status = OptimizerStatus.MAX_ITERATIONS
            break
        if should_stop is not None and should_stop():
            status = OptimizerStatus.CANCELLED
            break

        try:
            linear = graph.linearize(values)
        except CheiralityError as exc:
            logger.warning("Linearization failed at iteration %d: %s", iterations, exc)
            status, failure = OptimizerStatus.FAILED, exc
            break
        iterations += 1

        accepted = False
        trial_failure: Optional[Exception] = None
        for attempt in range(config.max_retries + 1):
            try:
                delta = solve(linear, lam, config.diagonal_damping, config.linear_solver)
                candidate = values.retract(delta)
                new_error = graph.error(candidate)
                trial_failure = None
            except (SingularSystemError, CheiralityError) as exc:
                logger.warning("Trial %d at lambda=%.3e failed: %s", attempt, lam, exc)
                trial_failure = exc
                new_error = math.inf

            if new_error < error:
                logger.debug(
                    "iter %d: accepted, error %.6e -> %.6e, lambda=%.3e, |dx|=%.3e",
                    iterations, error, new_error, lam, delta.norm(),
                )
                accepted = True
                break

            logger.debug(
                "iter %d: rejected, error %.6e -> %.6e, lambda=%.3e",
                iterations, error, new_error, lam,
            )
            if lam >= config.lambda_upper_bound:
                break
            lam = lam * config.lambda_factor if lam > 0.0 else max(config.initial_lambda, _LAMBDA_RESET)
            lam = min(lam, config.lambda_upper_bound)

        if not accepted:
            if trial_failure is not None:
                status, failure = OptimizerStatus.FAILED, trial_failure
            else:
                status = OptimizerStatus.DAMPING_LIMIT
            break

        previous_error = error
        values, error = candidate, new_error
        history.append(error)
        lam = max(lam / config.lambda_factor, config.lambda_lower_bound)

        if check_convergence(previous_error, error, config):
            status = OptimizerStatus.CONVERGED

    return _finish("LM", graph, values, error, iterations, status, history,
                   lam, failure, config.feasibility_tol)


def gauss_newton(
    graph: FactorGraph,
    initial: Values,
    config: Optional[GNConfig] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> OptimizationResult:
    """
    Gauss–Newton on a factor graph: undamped steps, every step accepted.

    A singular system or a point behind a camera ends the run with status
    FAILED and the last good estimate.
    """
    config = config or GNConfig()
    values = initial

    error, failure = _initial_error(graph, initial)
    if failure is not None:
        return _finish("GN", graph, values, error, 0, OptimizerStatus.FAILED, [],
                       0.0, failure, config.feasibility_tol)
    history = [error]
    logger.info(
        "GN start: error=%.6e, factors=%d, variables=%d",
        error, len(graph), len(values),
    )

    status: Optional[OptimizerStatus] = None
    iterations = 0
    if error <= config.error_tol:
        status = OptimizerStatus.CONVERGED

    while status is None:
        if iterations >= config.max_iters:
            status = OptimizerStatus.MAX_ITERATIONS
            break
        if should_stop is not None and should_stop():
            status = OptimizerStatus.CANCELLED
            break

        try:
            delta = solve(graph.linearize(values), 0.0, False, config.linear_solver)
            if config.max_step_norm is not None:
                step_norm = delta.norm()
                if step_norm > config.max_step_norm:
                    delta = delta.scale(config.max_step_norm / step_norm)
            candidate = values.retract(delta)
            new_error = graph.error(candidate)
        except (SingularSystemError, CheiralityError) as exc:
            logger.warning("GN step %d failed: %s", iterations, exc)
            status, failure = OptimizerStatus.FAILED, exc
            break
        iterations += 1
        logger.debug("iter %d: error %.6e -> %.6e, |dx|=%.3e", iterations, error, new_error, delta.norm())

        previous_error = error
        values, error = candidate, new_error
        history.append(error)
        if check_convergence(previous_error, error, config):
            status = OptimizerStatus.CONVERGED

    return _finish("GN", graph, values, error, iterations, status, history,
                   0.0, failure, config.feasibility_tol)
