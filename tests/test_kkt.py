from __future__ import annotations

import jax.numpy as jnp
import pytest

from sfm_jit.core.factor_graph import FactorGraph
from sfm_jit.core.types import dual_key, point_key, pose_key
from sfm_jit.core.values import Values, VectorValues
from sfm_jit.geometry.pose import Pose3
from sfm_jit.slam.measurements import max_range_factor, prior_factor, upper_bound_factor


def _constrained(x):
    """
    x0 ∈ ℝ² with the bounds
        x0[0] ≤ 1   (dual d0)
        x0[1] ≤ 5   (dual d1)
    """
    graph = FactorGraph()
    graph.add(prior_factor(point_key(0), jnp.array([2.0, 2.0])))
    graph.add(upper_bound_factor(point_key(0), 0, 1.0, dual_key(0)))
    graph.add(upper_bound_factor(point_key(0), 1, 5.0, dual_key(1)))
    return graph, Values({point_key(0): jnp.asarray(x)})


def test_feasible_and_complementary():
    graph, values = _constrained([1.0, 2.0])
    duals = VectorValues({dual_key(0): jnp.array([0.7])})
    assert graph.check_feasibility_and_complementarity(values, duals, 1e-9)


def test_violated_constraint_is_infeasible():
    graph, values = _constrained([1.5, 2.0])
    duals = VectorValues({dual_key(0): jnp.array([0.7])})
    assert not graph.check_feasibility_and_complementarity(values, duals, 1e-9)


def test_dual_on_inactive_constraint_fails():
    graph, values = _constrained([1.0, 2.0])
    duals = VectorValues({dual_key(0): jnp.array([0.7]), dual_key(1): jnp.array([0.1])})
    assert not graph.check_feasibility_and_complementarity(values, duals, 1e-9)


def test_missing_dual_is_treated_as_inactive():
    """Without dual entries only primal feasibility is checked."""
    graph, values = _constrained([0.5, 2.0])
    assert graph.check_feasibility_and_complementarity(values, VectorValues(), 1e-9)


def test_tolerance_is_respected():
    graph, values = _constrained([1.0 + 1e-7, 2.0])
    duals = VectorValues({dual_key(0): jnp.array([0.5])})
    assert not graph.check_feasibility_and_complementarity(values, duals, 1e-9)
    assert graph.check_feasibility_and_complementarity(values, duals, 1e-6)


def test_predicate_is_pure():
    graph, values = _constrained([1.0, 2.0])
    duals = VectorValues({dual_key(0): jnp.array([0.7])})
    before = values.at(point_key(0))
    graph.check_feasibility_and_complementarity(values, duals, 1e-9)
    assert jnp.array_equal(values.at(point_key(0)), before)
    assert len(duals) == 1


def test_is_active_and_dual():
    graph, values = _constrained([1.0, 2.0])
    active, inactive = graph.inequality_factors()
    assert active.is_active(values, 1e-9)
    assert not inactive.is_active(values, 1e-9)
    assert active.dual() == dual_key(0)


def test_constraint_violation():
    graph, values = _constrained([1.5, 2.0])
    violation = graph.constraint_violation(values)
    assert violation[1] == pytest.approx(0.5)
    assert violation[2] == 0.0
    assert 0 not in violation


def test_max_range_constraint():
    graph = FactorGraph()
    graph.add(max_range_factor(pose_key(0), point_key(0), 5.0, dual_key(0)))
    values = Values({pose_key(0): Pose3.identity(), point_key(0): jnp.array([0.0, 3.0, 4.0])})

    factor = graph[0]
    assert float(factor.unwhitened_error(values)[0]) == pytest.approx(0.0, abs=1e-12)
    assert factor.is_active(values, 1e-9)
    assert graph.check_feasibility_and_complementarity(values, VectorValues({dual_key(0): jnp.array([2.0])}), 1e-9)

    values.update(point_key(0), jnp.array([0.0, 6.0, 8.0]))
    assert not graph.check_feasibility_and_complementarity(values, VectorValues(), 1e-9)
