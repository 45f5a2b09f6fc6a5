"""
SE3 and SO3 Lie-group primitives for SFM-JIT.

This module implements the minimal 3D Lie-group mathematics required by the
pose and camera types:

    • SO(3) exponential & logarithm maps
    • SE(3) exponential & logarithm maps
    • Left Jacobian of SO(3) and its inverse (the SE(3) "V" matrix)
    • Series expansions near the identity and a dedicated branch near π

All functions are written in JAX and support:
    - JIT compilation
    - Forward- and reverse-mode differentiation
    - Finite derivatives at the identity (the branch predicate is taken on
      the squared angle, so no norm is differentiated at zero)

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation.

se3_exp(xi)
    Maps a 6-vector twist ξ = (v, ω) to a 4×4 SE(3) transform matrix.

se3_log(T)
    Inverse of se3_exp; extracts a twist from an SE3 matrix.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

vee(Ω)
    Converts a 3×3 matrix to the 3-vector of its skew-symmetric part.

Notes
-----
Twists are ordered translation first, ``[vx, vy, vz, wx, wy, wz]``. The
camera Jacobians in `geometry.camera` and every pose tangent vector in the
optimizer use this ordering.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE_SQ = 1e-10
_LOG_SMALL = 1e-6
_LOG_NEAR_PI = 1e-6


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.stack(
        [
            jnp.stack([zero, -z, y]),
            jnp.stack([z, zero, -x]),
            jnp.stack([-y, x, zero]),
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.

    Takes the skew-symmetric part of R, so for a rotation matrix this
    returns sin(theta) * axis.
    """
    return jnp.stack([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def _one_minus_cos_over_sq(theta: jnp.ndarray) -> jnp.ndarray:
    """(1 - cos θ) / θ² via the half-angle form, free of cancellation for small θ."""
    s = jnp.sin(0.5 * theta) / theta
    return 2.0 * s * s


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a second-order series for tiny angles.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    W = hat(w)
    I = jnp.eye(3, dtype=W.dtype)

    def small_angle(_) -> jnp.ndarray:
        return I + W + 0.5 * (W @ W)

    def normal_angle(_) -> jnp.ndarray:
        theta = jnp.sqrt(theta_sq)
        A = jnp.sin(theta) / theta
        B = _one_minus_cos_over_sq(theta)
        return I + A * W + B * (W @ W)

    return jax.lax.cond(theta_sq < _SMALL_ANGLE_SQ, small_angle, normal_angle, None)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    Handles:
      - small angles via the series theta / sin(theta) ~ 1 + theta^2 / 6
      - angles near pi, where sin(theta) vanishes, by reading the axis off
        the symmetric part of R
      - trace slightly outside [-1, 3] via clamping

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    s = vee(R)  # sin(theta) * axis

    def small_angle(_) -> jnp.ndarray:
        return s * (1.0 + jnp.dot(s, s) / 6.0)

    def general(_) -> jnp.ndarray:
        sin_theta = jnp.sqrt(jnp.dot(s, s))
        theta = jnp.arctan2(sin_theta, cos_theta)
        return (theta / sin_theta) * s

    def near_pi(_) -> jnp.ndarray:
        # Symmetric part: cos(theta) I + (1 - cos(theta)) a a^T
        S = 0.5 * (R + R.T)
        A = (S - cos_theta * jnp.eye(3, dtype=R.dtype)) / (1.0 - cos_theta)
        i = jnp.argmax(jnp.diag(A))
        axis = A[:, i] / jnp.sqrt(A[i, i])
        axis = jnp.where(jnp.dot(axis, s) < 0.0, -axis, axis)
        theta = jnp.arctan2(jnp.sqrt(jnp.dot(s, s)), cos_theta)
        return theta * axis

    def not_small(_) -> jnp.ndarray:
        return jax.lax.cond(cos_theta < -1.0 + _LOG_NEAR_PI, near_pi, general, None)

    return jax.lax.cond(cos_theta > 1.0 - _LOG_SMALL, small_angle, not_small, None)


def so3_left_jacobian(w: jnp.ndarray) -> jnp.ndarray:
    """
    Left Jacobian of SO(3), the "V" matrix that couples translation in se3_exp:

        V = I + (1 - cos θ)/θ² W + (θ - sin θ)/θ³ W²
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    W = hat(w)
    I = jnp.eye(3, dtype=W.dtype)

    def small_angle(_):
        return I + 0.5 * W + (W @ W) / 6.0

    def normal_angle(_):
        theta = jnp.sqrt(theta_sq)
        B = _one_minus_cos_over_sq(theta)
        C = (theta - jnp.sin(theta)) / (theta_sq * theta)
        return I + B * W + C * (W @ W)

    return jax.lax.cond(theta_sq < _SMALL_ANGLE_SQ, small_angle, normal_angle, None)


def so3_left_jacobian_inverse(w: jnp.ndarray) -> jnp.ndarray:
    """Inverse of `so3_left_jacobian`, used by se3_log."""
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    W = hat(w)
    I = jnp.eye(3, dtype=W.dtype)

    def small_angle(_):
        return I - 0.5 * W + (W @ W) / 12.0

    def normal_angle(_):
        theta = jnp.sqrt(theta_sq)
        # 1 - cos(theta) = 2 sin^2(theta / 2), so the ratio is (theta / 2) cot(theta / 2)
        half = 0.5 * theta
        c = (1.0 - half * jnp.cos(half) / jnp.sin(half)) / theta_sq
        return I - 0.5 * W + c * (W @ W)

    return jax.lax.cond(theta_sq < _SMALL_ANGLE_SQ, small_angle, normal_angle, None)


def se3_exp(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from se(3) -> SE(3).

    xi = [v_x, v_y, v_z, w_x, w_y, w_z]
      - v: translational part of the twist
      - w: rotation vector (axis-angle)

    Returns 4×4 homogeneous SE(3) matrix.

        T = [ R, V*v ]
            [ 0, 1   ]
    """
    xi = jnp.asarray(xi)
    v = xi[:3]
    w = xi[3:]

    R = so3_exp(w)
    t = so3_left_jacobian(w) @ v

    T = jnp.eye(4, dtype=R.dtype)
    T = T.at[:3, :3].set(R)
    T = T.at[:3, 3].set(t)
    return T


def se3_log(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of se3_exp: 4×4 transform -> twist [v, w]."""
    T = jnp.asarray(T)
    w = so3_log(T[:3, :3])
    v = so3_left_jacobian_inverse(w) @ T[:3, 3]
    return jnp.concatenate([v, w])


def skew_rotation_error(R: jnp.ndarray) -> jnp.ndarray:
    """Frobenius distance of R^T R from the identity; zero for a proper rotation."""
    R = jnp.asarray(R)
    return jnp.linalg.norm(R.T @ R - jnp.eye(3, dtype=R.dtype))
