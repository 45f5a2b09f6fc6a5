# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
SE(3) pose manifold.

A :class:`Pose3` stores a rotation matrix and a translation and behaves as
an element of SE(3):

    • composition, inverse and ``between``
    • point transforms into / out of the pose frame
    • retraction ``T ∘ Exp(ξ)`` and its inverse ``Log(T⁻¹ ∘ S)``

The tangent space is always 6-dimensional with twists ordered
``[v, ω]`` (see `core.math3d`), independent of the base pose, so the
column layout of a linearized system never changes between iterations.

Poses are registered as JAX pytrees: they can be passed into jitted
functions and differentiated through with ``jax.jacfwd``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

import jax
import jax.numpy as jnp

from sfm_jit.core.math3d import se3_exp, se3_log


@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True, eq=False)
class Pose3:
    """Rigid transform world_T_frame: ``p_world = R p_frame + t``."""

    rotation: jnp.ndarray     # (3, 3)
    translation: jnp.ndarray  # (3,)

    dim: ClassVar[int] = 6

    # --- pytree protocol ---

    def tree_flatten(self):
        return (self.rotation, self.translation), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    # --- constructors ---

    @staticmethod
    def identity() -> "Pose3":
        return Pose3(jnp.eye(3), jnp.zeros(3))

    @staticmethod
    def from_rt(rotation, translation) -> "Pose3":
        return Pose3(jnp.asarray(rotation, dtype=jnp.float64),
                     jnp.asarray(translation, dtype=jnp.float64))

    @staticmethod
    def expmap(xi: jnp.ndarray) -> "Pose3":
        T = se3_exp(xi)
        return Pose3(T[:3, :3], T[:3, 3])

    @staticmethod
    def logmap(pose: "Pose3") -> jnp.ndarray:
        return se3_log(pose.matrix())

    @staticmethod
    def lookat(eye, target, up) -> "Pose3":
        """
        Camera pose at ``eye`` looking at ``target``.

        The camera z-axis points at the target, x is ``-up × z`` and y
        completes the frame, so image rows grow "down" relative to ``up``.
        ``up`` does not need to be orthogonal to the viewing direction.
        """
        eye = jnp.asarray(eye, dtype=jnp.float64)
        zc = jnp.asarray(target, dtype=jnp.float64) - eye
        zc = zc / jnp.linalg.norm(zc)
        xc = jnp.cross(-jnp.asarray(up, dtype=jnp.float64), zc)
        xc = xc / jnp.linalg.norm(xc)
        yc = jnp.cross(zc, xc)
        return Pose3(jnp.stack([xc, yc, zc], axis=1), eye)

    # --- group operations ---

    def matrix(self) -> jnp.ndarray:
        T = jnp.eye(4, dtype=self.rotation.dtype)
        T = T.at[:3, :3].set(self.rotation)
        return T.at[:3, 3].set(self.translation)

    def compose(self, other: "Pose3") -> "Pose3":
        return Pose3(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def __matmul__(self, other: "Pose3") -> "Pose3":
        return self.compose(other)

    def inverse(self) -> "Pose3":
        Rt = self.rotation.T
        return Pose3(Rt, -(Rt @ self.translation))

    def between(self, other: "Pose3") -> "Pose3":
        """Relative pose ``self⁻¹ ∘ other``."""
        Rt = self.rotation.T
        return Pose3(Rt @ other.rotation, Rt @ (other.translation - self.translation))

    def transform_from(self, point: jnp.ndarray) -> jnp.ndarray:
        """Pose frame -> world."""
        return self.rotation @ point + self.translation

    def transform_to(self, point: jnp.ndarray) -> jnp.ndarray:
        """World -> pose frame."""
        return self.rotation.T @ (point - self.translation)

    # --- manifold ---

    def retract(self, xi: jnp.ndarray) -> "Pose3":
        return self.compose(Pose3.expmap(xi))

    def local_coordinates(self, other: "Pose3") -> jnp.ndarray:
        return Pose3.logmap(self.between(other))

    def equals(self, other: "Pose3", tol: float = 1e-9) -> bool:
        return bool(
            jnp.allclose(self.rotation, other.rotation, atol=tol)
            and jnp.allclose(self.translation, other.translation, atol=tol)
        )

    def __repr__(self) -> str:
        return f"Pose3(R={self.rotation}, t={self.translation})"
