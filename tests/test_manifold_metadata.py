from __future__ import annotations

import jax.numpy as jnp
import pytest

from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import PinholeCamera
from sfm_jit.geometry.pose import Pose3
from sfm_jit.slam import manifold


def _camera() -> PinholeCamera:
    return PinholeCamera(
        Pose3.expmap(jnp.array([0.1, 0.2, -0.3, 0.05, -0.1, 0.2])),
        Cal3Bundler(400.0, 0.01, -0.002),
    )


def test_manifold_kinds_and_dims():
    pose = Pose3.identity()
    cal = Cal3Bundler(500.0)
    cam = PinholeCamera(pose, cal)
    point = jnp.array([1.0, 2.0, 3.0])

    assert manifold.get_manifold(pose) == "se3"
    assert manifold.get_manifold(cal) == "calibration"
    assert manifold.get_manifold(cam) == "camera"
    assert manifold.get_manifold(point) == "euclidean"

    assert manifold.dim(pose) == 6
    assert manifold.dim(cal) == 3
    assert manifold.dim(cam) == 9
    assert manifold.dim(point) == 3


def test_as_value_normalizes_vectors():
    v = manifold.as_value([1, 2, 3])
    assert v.shape == (3,)
    assert v.dtype == jnp.float64

    assert manifold.as_value(2.0).shape == (1,)

    with pytest.raises(ValueError):
        manifold.as_value(jnp.eye(3))


def test_local_coordinates_rejects_mixed_kinds():
    with pytest.raises(ValueError):
        manifold.local_coordinates(Pose3.identity(), jnp.zeros(6))


def test_camera_roundtrip():
    cam = _camera()
    d = jnp.array([0.01, -0.02, 0.03, 0.002, 0.001, -0.003, 5.0, 0.001, 0.0001])

    moved = manifold.retract(cam, d)
    assert jnp.allclose(manifold.local_coordinates(cam, moved), d, atol=1e-10)
    assert float(moved.calibration.f) == pytest.approx(405.0)


def test_euclidean_retract_is_additive():
    x = jnp.array([1.0, 2.0])
    assert jnp.allclose(manifold.retract(x, jnp.array([0.5, -1.0])), jnp.array([1.5, 1.0]))
