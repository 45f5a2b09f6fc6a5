"""
Finite-difference Jacobians on manifolds, used to check analytic derivatives.
"""

from __future__ import annotations

from typing import Any, Callable

import jax.numpy as jnp

from sfm_jit.slam import manifold


def numerical_jacobian(fn: Callable[[Any], Any], x: Any, delta: float = 1e-5) -> jnp.ndarray:
    """
    Central-difference Jacobian of ``fn`` at ``x``.

    Both the input and the output may be manifold values: the input is
    perturbed with ``retract`` and the output differences are measured with
    ``local_coordinates`` around ``fn(x)``.

    Returns an (m, n) array, n the tangent dimension of ``x``.
    """
    y0 = fn(x)
    n = manifold.dim(x)
    cols = []
    for i in range(n):
        d = jnp.zeros(n).at[i].set(delta)
        plus = manifold.local_coordinates(y0, fn(manifold.retract(x, d)))
        minus = manifold.local_coordinates(y0, fn(manifold.retract(x, -d)))
        cols.append((plus - minus) / (2.0 * delta))
    return jnp.stack(cols, axis=1)
