from __future__ import annotations

import jax.numpy as jnp
import pytest

from sfm_jit.geometry.pose import Pose3


def _pose_a() -> Pose3:
    return Pose3.expmap(jnp.array([0.3, -0.1, 2.0, 0.2, -0.3, 0.5]))


def _pose_b() -> Pose3:
    return Pose3.expmap(jnp.array([-1.0, 0.4, 0.2, -0.6, 0.1, 0.2]))


def test_se3_retract_zero_delta_is_identity():
    pose = _pose_a()
    assert pose.retract(jnp.zeros(6)).equals(pose, 1e-12)


def test_se3_retract_pure_translation():
    pose = Pose3.identity()
    pose_new = pose.retract(jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]))

    assert jnp.allclose(pose_new.translation, jnp.array([1.0, 0.0, 0.0]), atol=1e-12)
    assert jnp.allclose(pose_new.rotation, jnp.eye(3), atol=1e-12)


def test_se3_retract_is_right_multiplicative():
    """A translation twist moves the pose along its own axes."""
    pose = Pose3.from_rt(jnp.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]), jnp.zeros(3))
    moved = pose.retract(jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]))
    assert jnp.allclose(moved.translation, jnp.array([0.0, 1.0, 0.0]), atol=1e-12)


def test_local_coordinates_roundtrip_laws():
    x, y = _pose_a(), _pose_b()
    d = jnp.array([0.1, -0.05, 0.02, 0.01, 0.0, -0.02])

    assert x.retract(x.local_coordinates(y)).equals(y, 1e-9)
    assert jnp.allclose(x.local_coordinates(x), jnp.zeros(6), atol=1e-12)
    assert jnp.allclose(x.local_coordinates(x.retract(d)), d, atol=1e-10)


def test_between_and_compose():
    a, b = _pose_a(), _pose_b()
    assert a.compose(a.between(b)).equals(b, 1e-9)
    assert (a @ a.inverse()).equals(Pose3.identity(), 1e-12)


def test_transform_to_inverts_transform_from():
    pose = _pose_a()
    p = jnp.array([0.5, -2.0, 3.0])
    assert jnp.allclose(pose.transform_to(pose.transform_from(p)), p, atol=1e-12)


def test_lookat_points_z_axis_at_target():
    pose = Pose3.lookat(jnp.array([10.0, 0.0, 0.0]), jnp.zeros(3), jnp.array([0.0, 0.0, 1.0]))

    assert jnp.allclose(pose.transform_to(jnp.zeros(3)), jnp.array([0.0, 0.0, 10.0]), atol=1e-12)
    assert jnp.allclose(pose.rotation.T @ pose.rotation, jnp.eye(3), atol=1e-12)
    assert jnp.linalg.det(pose.rotation) > 0.0
    # "up" in the world is negative y in the camera frame
    q = pose.transform_to(jnp.array([0.0, 0.0, 1.0]))
    assert jnp.allclose(q[1], -1.0, atol=1e-12)


@pytest.mark.parametrize("theta", [1e-6, 1.2e-5, 2e-5, 5e-5, 1e-4, 3e-4, 1e-3])
def test_local_coordinates_roundtrip_small_rotation_large_translation(theta):
    """Near-converged steps: tiny rotation, translation of order 10."""
    axis = jnp.array([1.0, 2.0, -2.0]) / 3.0
    d = jnp.concatenate([jnp.array([10.0, -10.0, 20.0]), theta * axis])

    for x in (Pose3.identity(), _pose_a()):
        recovered = x.local_coordinates(x.retract(d))
        assert float(jnp.max(jnp.abs(recovered - d))) < 1e-9
