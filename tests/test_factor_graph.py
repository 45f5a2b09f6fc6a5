from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from sfm_jit.core.errors import CheiralityError, MissingKeyError
from sfm_jit.core.factor_graph import FactorGraph
from sfm_jit.core.factors import Factor
from sfm_jit.core.noise import GaussianNoise
from sfm_jit.core.types import (
    FactorKind,
    JacobianProvider,
    calibration_key,
    camera_key,
    dual_key,
    point_key,
    pose_key,
)
from sfm_jit.core.values import Values, VectorValues
from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import PinholeCamera
from sfm_jit.geometry.pose import Pose3
from sfm_jit.slam.measurements import (
    AutodiffModel,
    between_factor,
    prior_factor,
    prior_residual,
    projection_factor,
    upper_bound_factor,
)


def _chain():
    """Two 2-D variables, a prior on the first and an odometry-style factor."""
    graph = FactorGraph()
    graph.add(prior_factor(pose_key(0), jnp.array([0.0, 0.0]), GaussianNoise.isotropic(2, 0.5)))
    graph.add(between_factor(pose_key(0), pose_key(1), jnp.array([1.0, 0.0])))

    values = Values()
    values.insert(pose_key(1), jnp.array([2.0, 1.0]))
    values.insert(pose_key(0), jnp.array([0.5, -0.5]))
    return graph, values


def test_single_variable_prior():
    """
    One variable x, one prior factor with sigma 0.5:
        residual = x - target,  error = ||2 (x - target)||²
    """
    factor = prior_factor(point_key(0), jnp.array([2.0, 0.0, 0.0]), GaussianNoise.isotropic(3, 0.5))
    values = Values({point_key(0): jnp.array([0.0, 0.0, 1.0])})

    assert jnp.allclose(factor.unwhitened_error(values), jnp.array([-2.0, 0.0, 1.0]))
    assert jnp.allclose(factor.whitened_error(values), jnp.array([-4.0, 0.0, 2.0]))
    assert factor.error(values) == pytest.approx(20.0)


def test_prior_linearization():
    factor = prior_factor(point_key(0), jnp.array([2.0, 0.0, 0.0]), GaussianNoise.isotropic(3, 0.5))
    values = Values({point_key(0): jnp.array([0.0, 0.0, 1.0])})

    jf = factor.linearize(values)

    assert jf.keys == (point_key(0),)
    np.testing.assert_allclose(jf.blocks[0], 2.0 * np.eye(3), atol=1e-12)
    np.testing.assert_allclose(jf.b, [4.0, 0.0, -2.0], atol=1e-12)
    # the Gauss-Newton step of the linear model lands on the prior
    dx = np.linalg.solve(jf.blocks[0], jf.b)
    np.testing.assert_allclose(dx, [2.0, 0.0, -1.0], atol=1e-12)


def test_graph_error_and_keys():
    graph, values = _chain()
    assert len(graph) == 2
    assert graph.keys() == [pose_key(0), pose_key(1)]
    # prior: ||2 * (0.5, -0.5)||² = 2; between: ||(1.5, 1.5) - (1, 0)||² = 2.5
    assert graph.error(values) == pytest.approx(4.5)


def test_linear_error_at_zero_matches_nonlinear_error():
    graph, values = _chain()
    linear = graph.linearize(values)
    zero = values.zero_vectors()
    assert linear.error(zero) == pytest.approx(graph.error(values))


def test_sparse_system_layout():
    """Rows follow factor order and columns follow key order."""
    graph, values = _chain()
    A, b, index = graph.linearize(values).sparse_system()

    assert A.shape == (4, 4)
    assert index == {pose_key(0): (0, 2), pose_key(1): (2, 2)}
    dense = A.toarray()
    np.testing.assert_allclose(dense[:2], [[2.0, 0.0, 0.0, 0.0], [0.0, 2.0, 0.0, 0.0]], atol=1e-12)
    np.testing.assert_allclose(dense[2:], [[-1.0, 0.0, 1.0, 0.0], [0.0, -1.0, 0.0, 1.0]], atol=1e-12)
    np.testing.assert_allclose(b, [-1.0, 1.0, -0.5, -1.5], atol=1e-12)

    H, g, _ = graph.linearize(values).hessian()
    np.testing.assert_allclose(H.toarray(), dense.T @ dense, atol=1e-12)
    np.testing.assert_allclose(g, dense.T @ b, atol=1e-12)


def test_linearize_missing_key_raises():
    graph, values = _chain()
    graph.add(prior_factor(pose_key(7), jnp.zeros(2)))
    with pytest.raises(MissingKeyError) as info:
        graph.linearize(values)
    assert info.value.key == pose_key(7)
    with pytest.raises(MissingKeyError):
        graph.error(values)


def test_linearize_preserves_kind_and_dual_key():
    graph, values = _chain()
    graph.add(upper_bound_factor(pose_key(1), 0, 3.0, dual_key(0)))

    linear = graph.linearize(values)

    assert [f.kind for f in linear] == [FactorKind.EQUALITY, FactorKind.EQUALITY, FactorKind.INEQUALITY]
    assert linear.factors[2].dual_key == dual_key(0)
    assert len(linear.inequality_factors()) == 1
    assert len(linear.equality_factors()) == 2
    # inequality factors do not enter the cost
    assert graph.error(values) == pytest.approx(4.5)


def test_factor_kind_validation():
    model = AutodiffModel(prior_residual, jnp.zeros(2))
    with pytest.raises(ValueError):
        Factor((point_key(0),), model, GaussianNoise.unit(2), FactorKind.EQUALITY, dual_key(0))
    with pytest.raises(ValueError):
        Factor((point_key(0),), model, GaussianNoise.unit(2), FactorKind.INEQUALITY, dual_key(0))
    with pytest.raises(ValueError):
        Factor((), model, GaussianNoise.unit(2))


def test_equality_factor_has_no_dual():
    factor = prior_factor(point_key(0), jnp.zeros(2))
    values = Values({point_key(0): jnp.zeros(2)})
    with pytest.raises(ValueError):
        factor.dual()
    with pytest.raises(ValueError):
        factor.is_active(values, 1e-9)


def test_noise_dimension_mismatch_raises():
    factor = prior_factor(point_key(0), jnp.zeros(3), GaussianNoise.unit(2))
    with pytest.raises(ValueError):
        factor.error(Values({point_key(0): jnp.zeros(3)}))


def _camera_values(camera_value, point):
    values = Values()
    values.insert(camera_key(0), camera_value)
    values.insert(point_key(0), point)
    return values


def test_projection_factor_layouts():
    cal = Cal3Bundler(500.0, 0.01, 0.001)
    pose = Pose3.lookat(jnp.array([0.0, -10.0, 1.0]), jnp.zeros(3), jnp.array([0.0, 0.0, 1.0]))
    point = jnp.array([0.2, 0.3, -0.1])
    measured = PinholeCamera(pose, cal).project(point).pixel + jnp.array([1.0, -2.0])

    camera_factor = projection_factor(camera_key(0), point_key(0), measured)
    jf = camera_factor.linearize(_camera_values(PinholeCamera(pose, cal), point))
    assert [blk.shape for blk in jf.blocks] == [(2, 9), (2, 3)]
    np.testing.assert_allclose(jf.b, [1.0, -2.0], atol=1e-9)

    pose_factor = projection_factor(camera_key(0), point_key(0), measured, calibration=cal)
    jf = pose_factor.linearize(_camera_values(pose, point))
    assert [blk.shape for blk in jf.blocks] == [(2, 6), (2, 3)]

    shared = projection_factor(camera_key(0), point_key(0), measured, calibration_key=calibration_key(0))
    values = _camera_values(pose, point)
    values.insert(calibration_key(0), cal)
    jf = shared.linearize(values)
    assert jf.keys == (camera_key(0), calibration_key(0), point_key(0))
    assert [blk.shape for blk in jf.blocks] == [(2, 6), (2, 3), (2, 3)]


def test_projection_providers_agree():
    cal = Cal3Bundler(500.0, 0.01, 0.001)
    camera = PinholeCamera.lookat(jnp.array([3.0, -10.0, 1.0]), jnp.zeros(3), jnp.array([0.0, 0.0, 1.0]), cal)
    point = jnp.array([0.2, 0.3, -0.1])
    values = _camera_values(camera, point)
    measured = jnp.array([10.0, 20.0])

    analytic = projection_factor(camera_key(0), point_key(0), measured, provider=JacobianProvider.ANALYTIC)
    autodiff = projection_factor(camera_key(0), point_key(0), measured, provider=JacobianProvider.AUTODIFF)
    a, b = analytic.linearize(values), autodiff.linearize(values)

    np.testing.assert_allclose(a.b, b.b, atol=1e-9)
    for A1, A2 in zip(a.blocks, b.blocks):
        np.testing.assert_allclose(A1, A2, atol=1e-8)


def test_cheirality_propagates_from_linearize():
    camera = PinholeCamera(Pose3.identity(), Cal3Bundler(500.0))
    values = _camera_values(camera, jnp.array([0.0, 0.0, -5.0]))
    factor = projection_factor(camera_key(0), point_key(0), jnp.zeros(2))
    with pytest.raises(CheiralityError):
        factor.linearize(values)
    with pytest.raises(CheiralityError):
        factor.error(values)


def test_linear_factor_error():
    graph, values = _chain()
    linear = graph.linearize(values)
    # the exact solution of this linear problem zeroes both factors
    delta = VectorValues({pose_key(0): jnp.array([-0.5, 0.5]), pose_key(1): jnp.array([-1.0, -1.0])})
    assert linear.error(delta) == pytest.approx(0.0, abs=1e-20)


def test_extend_appends_in_order():
    graph = FactorGraph()
    first = prior_factor(pose_key(0), jnp.zeros(2))
    second = between_factor(pose_key(0), pose_key(1), jnp.array([1.0, 0.0]))
    graph.extend([first, second])

    assert len(graph) == 2
    assert graph[0] is first and graph[1] is second
    assert graph.keys() == sorted([pose_key(0), pose_key(1)])
