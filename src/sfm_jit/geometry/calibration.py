# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Bundler calibration: a single focal length and two radial distortion terms.

    g(r²)   = 1 + k1 r² + k2 r⁴
    pixel   = (u0, v0) + f g(r²) (u, v),     r² = u² + v²

The optimized coordinates are ``(f, k1, k2)``; the principal point is held
fixed. The calibration is a 3-dimensional vector space, so retraction is
plain addition.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, NamedTuple, Optional

import jax
import jax.numpy as jnp

from sfm_jit.core.types import JacobianMode


class UncalibrateResult(NamedTuple):
    pixel: jnp.ndarray
    d_calibration: Optional[jnp.ndarray] = None  # (2, 3)
    d_point: Optional[jnp.ndarray] = None        # (2, 2), w.r.t. normalized coordinates


@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True, eq=False)
class Cal3Bundler:
    f: float = 1.0
    k1: float = 0.0
    k2: float = 0.0
    u0: float = 0.0
    v0: float = 0.0

    dim: ClassVar[int] = 3

    def tree_flatten(self):
        return (self.f, self.k1, self.k2, self.u0, self.v0), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    @staticmethod
    def from_vector(v: jnp.ndarray, u0: float = 0.0, v0: float = 0.0) -> "Cal3Bundler":
        return Cal3Bundler(v[0], v[1], v[2], u0, v0)

    def vector(self) -> jnp.ndarray:
        return jnp.stack([jnp.asarray(self.f, dtype=jnp.float64),
                          jnp.asarray(self.k1, dtype=jnp.float64),
                          jnp.asarray(self.k2, dtype=jnp.float64)])

    def principal_point(self) -> jnp.ndarray:
        return jnp.stack([jnp.asarray(self.u0, dtype=jnp.float64),
                          jnp.asarray(self.v0, dtype=jnp.float64)])

    def uncalibrate(
        self,
        pn: jnp.ndarray,
        mode: JacobianMode = JacobianMode.VALUE,
    ) -> UncalibrateResult:
        """
        Normalized image coordinates -> pixels.

        With ``JacobianMode.VALUE_AND_JACOBIANS`` also returns the 2×3
        derivative w.r.t. ``(f, k1, k2)`` and the 2×2 derivative w.r.t. ``pn``.
        """
        u, v = pn[0], pn[1]
        f, k1, k2 = self.f, self.k1, self.k2
        r2 = u * u + v * v
        g = 1.0 + (k1 + k2 * r2) * r2
        pixel = self.principal_point() + f * g * jnp.stack([u, v])

        if mode is JacobianMode.VALUE:
            return UncalibrateResult(pixel)

        r4 = r2 * r2
        d_calibration = jnp.stack([
            jnp.stack([g * u, f * u * r2, f * u * r4]),
            jnp.stack([g * v, f * v * r2, f * v * r4]),
        ])

        dg = 2.0 * (k1 + 2.0 * k2 * r2)  # d g / d(u or v), divided by the coordinate
        d_point = f * jnp.stack([
            jnp.stack([g + dg * u * u, dg * u * v]),
            jnp.stack([dg * u * v, g + dg * v * v]),
        ])
        return UncalibrateResult(pixel, d_calibration, d_point)

    def calibrate(self, pixel: jnp.ndarray, tol: float = 1e-12, max_iters: int = 50) -> jnp.ndarray:
        """
        Pixels -> normalized coordinates by fixed-point iteration on the
        distortion. Assumes the distortion is invertible in the operating range.
        """
        target = (jnp.asarray(pixel) - self.principal_point()) / self.f
        pn = target
        for _ in range(max_iters):
            r2 = jnp.dot(pn, pn)
            g = 1.0 + (self.k1 + self.k2 * r2) * r2
            pn_next = target / g
            if float(jnp.linalg.norm(pn_next - pn)) < tol:
                return pn_next
            pn = pn_next
        return pn

    # --- manifold ---

    def retract(self, delta: jnp.ndarray) -> "Cal3Bundler":
        return Cal3Bundler.from_vector(self.vector() + delta, self.u0, self.v0)

    def local_coordinates(self, other: "Cal3Bundler") -> jnp.ndarray:
        return other.vector() - self.vector()

    def equals(self, other: "Cal3Bundler", tol: float = 1e-9) -> bool:
        return bool(
            jnp.allclose(self.vector(), other.vector(), atol=tol)
            and jnp.allclose(self.principal_point(), other.principal_point(), atol=tol)
        )
