# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Differentiable pinhole camera model.

A :class:`PinholeCamera` combines a :class:`Pose3` (world_T_camera, z-axis
looking forward) with a :class:`Cal3Bundler` calibration. Projection runs in
four steps:

    1. q  = R^T (P - t)                       point in the camera frame
    2. reject q_z <= 0 with CheiralityError   (never clamped)
    3. pn = (q_x / q_z, q_y / q_z)            perspective divide
    4. pixel = calibration.uncalibrate(pn)

Jacobians
---------
`PinholeCamera.project` returns closed-form Jacobians computed from the
cached normalized coordinates ``(u, v)``, the inverse depth ``d = 1 / q_z``
and the rotation ``R``:

    d pn / d pose  = [ -d   0   d u   u v    -(1 + u²)   v  ]
                     [  0  -d   d v   1 + v²  -u v       -u ]

    d pn / d point = d [ R[:,0] - u R[:,2] ]ᵀ
                       [ R[:,1] - v R[:,2] ]

chained with the 2×2 derivative of the calibration. The pose block is with
respect to the right-perturbation ``pose ∘ Exp(ξ)`` with ξ = [v, ω].

`project_autodiff` computes the same three blocks with ``jax.jacfwd`` over
local coordinates; both paths must agree to floating-point tolerance.

Snavely cameras
---------------
`snavely_project` is the Bundler / BAL convention used by the autodiff
timing harness: a 9-vector ``[angle-axis, translation, f, k1, k2]`` mapping
world to camera, with the camera looking down its negative z-axis.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, NamedTuple, Optional, Tuple

import jax
import jax.numpy as jnp

from sfm_jit.core.errors import CheiralityError
from sfm_jit.core.math3d import so3_exp, so3_log
from sfm_jit.core.types import JacobianMode
from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.pose import Pose3


class ProjectionResult(NamedTuple):
    pixel: jnp.ndarray
    d_pose: Optional[jnp.ndarray] = None         # (2, 6)
    d_calibration: Optional[jnp.ndarray] = None  # (2, 3)
    d_point: Optional[jnp.ndarray] = None        # (2, 3)

    @property
    def d_camera(self) -> Optional[jnp.ndarray]:
        """(2, 9) Jacobian w.r.t. the full camera tangent [pose, calibration]."""
        if self.d_pose is None:
            return None
        return jnp.concatenate([self.d_pose, self.d_calibration], axis=1)


class RangeResult(NamedTuple):
    range: jnp.ndarray
    d_pose: Optional[jnp.ndarray] = None   # (1, 6)
    d_point: Optional[jnp.ndarray] = None  # (1, 3)


def project_to_camera(
    q: jnp.ndarray,
    mode: JacobianMode = JacobianMode.VALUE,
) -> Tuple[jnp.ndarray, Optional[jnp.ndarray]]:
    """
    Project a point given in camera coordinates to normalized coordinates.

    Raises CheiralityError when the depth is not strictly positive.
    Returns ``(pn, d_pn_d_q)`` where the derivative is None in VALUE mode.
    """
    depth = float(q[2])
    if not depth > 0.0:
        raise CheiralityError(depth)
    d = 1.0 / q[2]
    u = q[0] * d
    v = q[1] * d
    pn = jnp.stack([u, v])
    if mode is JacobianMode.VALUE:
        return pn, None
    one, zero = jnp.ones_like(u), jnp.zeros_like(u)
    Dq = d * jnp.stack([
        jnp.stack([one, zero, -u]),
        jnp.stack([zero, one, -v]),
    ])
    return pn, Dq


@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True, eq=False)
class PinholeCamera:
    pose: Pose3
    calibration: Cal3Bundler

    dim: ClassVar[int] = 9

    def tree_flatten(self):
        return (self.pose, self.calibration), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    @staticmethod
    def lookat(eye, target, up, calibration: Optional[Cal3Bundler] = None) -> "PinholeCamera":
        return PinholeCamera(Pose3.lookat(eye, target, up), calibration or Cal3Bundler())

    # --- measurement functions ---

    def project(
        self,
        point: jnp.ndarray,
        mode: JacobianMode = JacobianMode.VALUE,
    ) -> ProjectionResult:
        """
        Predicted pixel of a world point, optionally with Jacobians.

        :param point: 3D point in world coordinates.
        :param mode: ``JacobianMode.VALUE`` or ``JacobianMode.VALUE_AND_JACOBIANS``.
        :returns: ProjectionResult; Jacobian fields are None in VALUE mode.
        :raises CheiralityError: if the point is on or behind the image plane.
        """
        point = jnp.asarray(point)
        q = self.pose.transform_to(point)
        pn, _ = project_to_camera(q)
        cal = self.calibration.uncalibrate(pn, mode)
        if mode is JacobianMode.VALUE:
            return ProjectionResult(cal.pixel)

        R = self.pose.rotation
        d = 1.0 / q[2]
        u, v = pn[0], pn[1]
        zero = jnp.zeros_like(u)
        Dpn_pose = jnp.stack([
            jnp.stack([-d, zero, d * u, u * v, -(1.0 + u * u), v]),
            jnp.stack([zero, -d, d * v, 1.0 + v * v, -u * v, -u]),
        ])
        Dpn_point = d * jnp.stack([
            R[:, 0] - u * R[:, 2],
            R[:, 1] - v * R[:, 2],
        ])
        return ProjectionResult(
            pixel=cal.pixel,
            d_pose=cal.d_point @ Dpn_pose,
            d_calibration=cal.d_calibration,
            d_point=cal.d_point @ Dpn_point,
        )

    def backproject(self, pixel: jnp.ndarray, depth: float) -> jnp.ndarray:
        """World point at ``depth`` along the ray through ``pixel``."""
        pn = self.calibration.calibrate(pixel)
        q = jnp.concatenate([pn * depth, jnp.array([depth])])
        return self.pose.transform_from(q)

    def range(self, point: jnp.ndarray, mode: JacobianMode = JacobianMode.VALUE) -> RangeResult:
        """Distance from the camera center to a world point."""
        diff = jnp.asarray(point) - self.pose.translation
        r = jnp.linalg.norm(diff)
        if mode is JacobianMode.VALUE:
            return RangeResult(r)
        direction = diff / r
        d_pose = jnp.concatenate([-(direction @ self.pose.rotation), jnp.zeros(3)])
        return RangeResult(r, d_pose[None, :], direction[None, :])

    # --- manifold ---

    def retract(self, delta: jnp.ndarray) -> "PinholeCamera":
        return PinholeCamera(self.pose.retract(delta[:6]), self.calibration.retract(delta[6:]))

    def local_coordinates(self, other: "PinholeCamera") -> jnp.ndarray:
        return jnp.concatenate([
            self.pose.local_coordinates(other.pose),
            self.calibration.local_coordinates(other.calibration),
        ])

    def equals(self, other: "PinholeCamera", tol: float = 1e-9) -> bool:
        return self.pose.equals(other.pose, tol) and self.calibration.equals(other.calibration, tol)


# --- autodiff path ---

def _pinhole_pixel(camera: PinholeCamera, point: jnp.ndarray) -> jnp.ndarray:
    q = camera.pose.transform_to(point)
    return camera.calibration.uncalibrate(q[:2] / q[2]).pixel


def _project_local(xi, dcal, dpoint, camera, point):
    moved = PinholeCamera(camera.pose.retract(xi), camera.calibration.retract(dcal))
    return _pinhole_pixel(moved, point + dpoint)


_projection_jacobians = jax.jit(jax.jacfwd(_project_local, argnums=(0, 1, 2)))


def project_autodiff(camera: PinholeCamera, point: jnp.ndarray) -> ProjectionResult:
    """
    Same contract as ``camera.project(point, VALUE_AND_JACOBIANS)`` with the
    Jacobians produced by forward-mode autodiff around zero local coordinates.
    """
    point = jnp.asarray(point, dtype=jnp.float64)
    value = camera.project(point)
    d_pose, d_calibration, d_point = _projection_jacobians(
        jnp.zeros(Pose3.dim), jnp.zeros(Cal3Bundler.dim), jnp.zeros(3), camera, point
    )
    return ProjectionResult(value.pixel, d_pose, d_calibration, d_point)


# --- Snavely / BAL convention ---

def snavely_point_in_camera(camera: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """World point into the Snavely camera frame: ``R(aa) X + t``."""
    return so3_exp(camera[:3]) @ point + camera[3:6]


def snavely_depth(camera: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Depth along the viewing direction; Snavely cameras look down -z."""
    return -snavely_point_in_camera(camera, point)[2]


def snavely_project(camera: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """
    Bundler projection of a 9-vector camera ``[aa(3), t(3), f, k1, k2]``.

    Pure function with no cheirality check so it can be traced; callers
    check `snavely_depth` first.
    """
    p = snavely_point_in_camera(camera, point)
    xp = -p[0] / p[2]
    yp = -p[1] / p[2]
    f, k1, k2 = camera[6], camera[7], camera[8]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (k1 + k2 * r2)
    return f * distortion * jnp.stack([xp, yp])


def camera_to_snavely(camera: PinholeCamera) -> jnp.ndarray:
    """
    Convert a z-forward pinhole camera to the Snavely 9-vector.

    The Snavely frame is the camera frame rotated by pi about x, so image y
    flips sign: a pinhole pixel (x, y) appears as (x, -y) in Snavely
    coordinates.
    """
    flip = jnp.diag(jnp.array([1.0, -1.0, -1.0]))
    R_cw = flip @ camera.pose.rotation.T
    t_cw = -(R_cw @ camera.pose.translation)
    return jnp.concatenate([so3_log(R_cw), t_cw, camera.calibration.vector()])


def snavely_to_camera(camera: jnp.ndarray, u0: float = 0.0, v0: float = 0.0) -> PinholeCamera:
    """Inverse of `camera_to_snavely`."""
    flip = jnp.diag(jnp.array([1.0, -1.0, -1.0]))
    R_cw = so3_exp(camera[:3])
    R_wc = (flip @ R_cw).T
    t_wc = -(R_wc @ (flip @ camera[3:6]))
    return PinholeCamera(Pose3(R_wc, t_wc), Cal3Bundler.from_vector(camera[6:9], u0, v0))
